import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Coroutine, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from coach_chatbot.auth import Identity
from coach_chatbot.db import Database
from coach_chatbot.db.crud_helper import CRUDRegistry
from coach_chatbot.exceptions import AccessError
from coach_chatbot.llm.provider import ProviderFactory, build_provider
from coach_chatbot.services.context import ContextAssembler
from coach_chatbot.services.memory_extractor import MemoryExtractor
from coach_chatbot.services.memory_store import MemoryStore
from coach_chatbot.services.persistence import TurnPersistenceStore
from coach_chatbot.services.titles import TitleGenerator
from coach_chatbot.settings import Config, config
from coach_chatbot.streaming.artifacts import ArtifactGenerator
from coach_chatbot.streaming.events import StreamEvent
from coach_chatbot.streaming.multiplexer import StreamMultiplexer, TurnOutcome
from coach_chatbot.streaming.tools import ToolExecutor
from coach_chatbot.utils.hybrid_search import Retriever

logger = logging.getLogger(__name__)


@dataclass
class ChatTurn:
    conversation_id: str
    message_id: str
    events: AsyncIterator[StreamEvent]


def to_langchain_messages(messages: list[dict[str, Any]]) -> list[BaseMessage]:
    """Stored or client-supplied ``{role, content}`` turns as model messages."""
    converted: list[BaseMessage] = []
    for message in messages:
        content = message.get("content") or ""
        if not content:
            continue
        if message["role"] == "user":
            converted.append(HumanMessage(content=content))
        elif message["role"] == "assistant":
            converted.append(AIMessage(content=content))
    return converted


class ChatOrchestrator:
    """
    Runs chat turns end to end and owns the background work they spawn.

    Everything stateful is injected: the database handle, the provider factory
    and the retriever are built once by the application and shared by turns.
    """

    def __init__(
        self,
        database: Database,
        provider_factory: ProviderFactory = build_provider,
        retriever: Optional[Retriever] = None,
        settings: Config = config,
    ) -> None:
        self.settings = settings
        self.provider_factory = provider_factory
        self.crud = CRUDRegistry(database)
        self.store = TurnPersistenceStore(self.crud)
        self.memory_store = MemoryStore(self.crud)
        self.context = ContextAssembler(self.crud, self.memory_store, retriever, settings)
        self.titles = TitleGenerator(self.store, provider_factory, settings)
        self.extractor = MemoryExtractor(self.store, self.memory_store, provider_factory, settings)
        self._background: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for title generation, persistence and extraction tasks to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def start_turn(
        self,
        identity: Identity,
        *,
        model: str,
        message: Optional[str] = None,
        messages: Optional[list[dict[str, Any]]] = None,
        conversation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        parent_message_id: Optional[str] = None,
    ) -> ChatTurn:
        """
        Prepare one turn and return its event stream.

        Configuration and access errors (including a parent message from another
        conversation or tenant) are raised here, before anything is written or
        streamed. Later failures arrive as an ``error`` event.
        """
        if not identity.tenant_id:
            raise AccessError("No active organization")
        user_id, tenant_id = identity.user_id, identity.tenant_id

        if message is not None:
            user_text = message
        else:
            user_turns = [m for m in messages or [] if m["role"] == "user"]
            user_text = user_turns[-1].get("content") if user_turns else None

        assembled = await self.context.assemble(agent_id, user_id, tenant_id, user_text)
        agent = assembled.agent or {}
        model_name = agent.get("model") or model
        provider = self.provider_factory(model_name, agent.get("parameters"))
        if parent_message_id is not None:
            await self.store.require_message(conversation_id, tenant_id, parent_message_id)

        conversation_id, created = await self.store.ensure_conversation(
            conversation_id, tenant_id, user_id, model_name, agent_id, user_text
        )
        user_row = await self.store.record_user_message(
            conversation_id, tenant_id, user_text, parent_message_id
        )
        if created and user_text:
            self.spawn(self.titles.generate(conversation_id, tenant_id, user_text))

        if message is not None:
            leaf_id = user_row["id"] if user_row else None
            stored = await self.store.history_path(
                conversation_id, tenant_id, leaf_id, limit=self.settings.history_limit
            )
            history = to_langchain_messages(stored)
        else:
            history = to_langchain_messages(messages or [])

        message_id = str(uuid.uuid4())
        logger.info(
            f"Starting turn {message_id} in conversation {conversation_id} "
            f"(model={model_name}, artifacts={assembled.artifacts_enabled}, "
            f"kb={assembled.has_knowledge_base}, memories={assembled.has_memories})"
        )

        def executor_factory(emit) -> ToolExecutor:
            artifacts = ArtifactGenerator(provider, emit) if assembled.artifacts_enabled else None
            return ToolExecutor(self.memory_store, user_id, tenant_id, artifacts)

        async def persist(outcome: TurnOutcome) -> None:
            await self.store.record_assistant_message(
                conversation_id,
                tenant_id,
                message_id,
                outcome.text,
                tool_calls=outcome.tool_calls,
                tool_results=outcome.tool_results,
                usage=outcome.usage,
                parent_message_id=user_row["id"] if user_row else None,
                model=model_name,
                finish_reason=outcome.finish_reason,
            )

        def schedule_extraction(outcome: TurnOutcome) -> None:
            self.spawn(self.extractor.maybe_extract(conversation_id, user_id, tenant_id))

        multiplexer = StreamMultiplexer(
            provider,
            [SystemMessage(content=assembled.system_prompt), *history],
            executor_factory,
            persist,
            conversation_id=conversation_id,
            message_id=message_id,
            max_tool_steps=self.settings.max_tool_steps,
            spawn=self.spawn,
            on_finished=schedule_extraction,
        )
        return ChatTurn(conversation_id, message_id, multiplexer.events())
