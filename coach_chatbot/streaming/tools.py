import logging
from typing import Any, Optional, Type

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field, ValidationError

from coach_chatbot.llm.provider import ToolCallRequest
from coach_chatbot.services.memory_store import MemoryStore
from coach_chatbot.streaming.artifacts import ArtifactGenerator
from coach_chatbot.streaming.events import ArtifactKind

logger = logging.getLogger(__name__)

CREATE_ARTIFACT = "create_artifact"
QUERY_MEMORIES = "query_memories"


class CreateArtifact(BaseModel):
    """Create an artifact like a document, code snippet, HTML page, or React component.
    The content is generated and shown in the artifact panel. Use this when the user
    asks you to create, write, or generate something substantial."""

    title: str = Field(description="Title of the artifact, e.g. 'Business Plan' or 'Landing Page'")
    kind: ArtifactKind = Field(description="Type of artifact to create")
    description: Optional[str] = Field(
        default=None, description="Brief description of what to generate"
    )
    language: Optional[str] = Field(
        default=None, description="Programming language, only for code artifacts"
    )


class QueryMemories(BaseModel):
    """Search the user's stored business memories and context, such as goals,
    strategies, offers or audience details."""

    query: str = Field(
        description="Search query, e.g. 'business goals', 'pricing strategy', 'target audience'"
    )


class ToolOutcome(BaseModel):
    """What a tool hands back to the model, and what gets persisted for it."""

    reply: str
    result: Any = None


def tool_definition(name: str, schema: Type[BaseModel]) -> dict[str, Any]:
    definition = convert_to_openai_tool(schema)
    definition["function"]["name"] = name
    return definition


class ToolExecutor:
    """Runs tool calls requested by the primary model for one turn."""

    def __init__(
        self,
        memory_store: MemoryStore,
        user_id: str,
        tenant_id: str,
        artifacts: Optional[ArtifactGenerator] = None,
    ) -> None:
        self.memory_store = memory_store
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.artifacts = artifacts

    @property
    def definitions(self) -> list[dict[str, Any]]:
        tools = [tool_definition(QUERY_MEMORIES, QueryMemories)]
        if self.artifacts is not None:
            tools.append(tool_definition(CREATE_ARTIFACT, CreateArtifact))
        return tools

    async def execute(self, call: ToolCallRequest) -> ToolOutcome:
        try:
            if call.name == CREATE_ARTIFACT and self.artifacts is not None:
                return await self._create_artifact(call.id, CreateArtifact(**call.arguments))
            if call.name == QUERY_MEMORIES:
                return await self._query_memories(QueryMemories(**call.arguments))
        except ValidationError as e:
            logger.warning(f"Invalid arguments for tool {call.name} ({call.id}): {e}")
            return ToolOutcome(
                reply=f"Error: invalid arguments for {call.name}",
                result={"error": "invalid arguments"},
            )
        logger.warning(f"Model requested unknown tool {call.name}")
        return ToolOutcome(reply=f"Error: unknown tool {call.name}", result={"error": "unknown tool"})

    async def _create_artifact(self, tool_call_id: str, request: CreateArtifact) -> ToolOutcome:
        document, error = await self.artifacts.generate(tool_call_id, request)
        result = {"id": tool_call_id, **document.model_dump(mode="json", exclude_none=True)}
        if error:
            return ToolOutcome(
                reply=f"Created artifact: {document.title} (generation failed: {error})",
                result={**result, "error": error},
            )
        return ToolOutcome(reply=f"Created artifact: {document.title}", result=result)

    async def _query_memories(self, request: QueryMemories) -> ToolOutcome:
        try:
            matches = await self.memory_store.query(self.user_id, self.tenant_id, request.query)
        except Exception as e:
            logger.error(f"Memory query failed for user {self.user_id}: {e}", exc_info=True)
            return ToolOutcome(reply=f"Error querying memories: {e}", result={"error": str(e)})

        if not matches:
            reply = f'No memories found matching "{request.query}".'
        else:
            lines = [f"- {m['key']}: {m['value']}" for m in matches]
            reply = f"Found {len(matches)} relevant memories:\n\n" + "\n".join(lines)
        return ToolOutcome(reply=reply, result={"query": request.query, "matches": len(matches)})
