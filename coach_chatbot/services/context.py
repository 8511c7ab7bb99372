import logging
from collections import defaultdict
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from coach_chatbot.db.crud_helper import CRUDRegistry
from coach_chatbot.exceptions import ContextAssemblyDegradation
from coach_chatbot.models.agent import Agent
from coach_chatbot.models.memory import MemoryCategory
from coach_chatbot.services.memory_store import MemoryStore
from coach_chatbot.settings import Config, config
from coach_chatbot.utils.hybrid_search import Retriever

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a helpful AI assistant."

CATEGORY_LABELS = {
    MemoryCategory.PERSONAL_INFO: "Personal Information",
    MemoryCategory.BUSINESS_INFO: "Business Information",
    MemoryCategory.TARGET_AUDIENCE: "Target Audience",
    MemoryCategory.OFFERS: "Products & Offers",
    MemoryCategory.CURRENT_PROJECTS: "Current Projects",
    MemoryCategory.CHALLENGES: "Challenges",
    MemoryCategory.GOALS: "Goals",
}

MEMORY_PREAMBLE = (
    "## User Context & Memories\n"
    "You have access to the following information about this user. "
    "Use it to personalize your responses:"
)

MEMORY_FOOTER = (
    "When the user asks about personal or business details, check this context first. "
    "If the information isn't here, use the query_memories tool to search for more details."
)


class AssembledContext(BaseModel):
    system_prompt: str
    has_knowledge_base: bool = False
    has_memories: bool = False
    artifacts_enabled: bool = False
    agent: Optional[dict[str, Any]] = None


def render_knowledge_block(hits: list[dict[str, Any]]) -> str:
    lines = ["Relevant information from knowledge base:", ""]
    for index, hit in enumerate(hits, start=1):
        lines.append(f"[{index}] {hit['content']}")
        lines.append("")
    return "\n".join(lines).rstrip()


def render_memory_block(memories: list[dict[str, Any]]) -> str:
    grouped = defaultdict(list)
    for memory in memories:
        grouped[memory["category"]].append(memory)

    sections = []
    for category in MemoryCategory:
        entries = grouped.get(category.value)
        if not entries:
            continue
        bullets = "\n".join(f"- **{m['key']}**: {m['value']}" for m in entries)
        sections.append(f"### {CATEGORY_LABELS[category]}\n{bullets}")
    return f"{MEMORY_PREAMBLE}\n\n" + "\n\n".join(sections) + f"\n\n{MEMORY_FOOTER}"


class ContextAssembler:
    """Builds the system prompt for one turn from the agent, its knowledge base and the user's memories."""

    def __init__(
        self,
        crud: CRUDRegistry,
        memory_store: MemoryStore,
        retriever: Optional[Retriever] = None,
        settings: Config = config,
    ) -> None:
        self.crud = crud
        self.memory_store = memory_store
        self.retriever = retriever
        self.settings = settings

    async def load_agent(self, agent_id: Optional[str], tenant_id: str) -> Optional[dict[str, Any]]:
        if not agent_id:
            return None
        try:
            return await run_in_threadpool(
                self.crud.agents.get_resource, agent_id, where=[Agent.tenant_id == tenant_id]
            )
        except Exception as e:
            logger.error(f"Failed to load agent {agent_id}: {e}", exc_info=True)
            return None

    async def _knowledge_block(self, agent, tenant_id, user_text) -> Optional[str]:
        knowledge_base_id = agent.get("knowledge_base_id") if agent else None
        if not knowledge_base_id or self.retriever is None or not user_text:
            return None
        try:
            hits = await self.retriever.search(
                user_text,
                tenant_id=tenant_id,
                knowledge_base_id=knowledge_base_id,
                limit=self.settings.kb_top_k,
                min_similarity=self.settings.kb_min_similarity,
            )
        except Exception as e:
            degradation = ContextAssemblyDegradation(f"Knowledge base retrieval failed: {e}")
            logger.warning(f"{degradation.message} (kb {knowledge_base_id})")
            return None
        if not hits:
            return None
        logger.info(f"Retrieved {len(hits)} chunks from knowledge base {knowledge_base_id}")
        return render_knowledge_block(hits)

    async def _memory_block(self, user_id, tenant_id) -> Optional[str]:
        try:
            memories = await self.memory_store.list_memories(user_id, tenant_id)
        except Exception as e:
            degradation = ContextAssemblyDegradation(f"Memory load failed: {e}")
            logger.warning(f"{degradation.message} (user {user_id})")
            return None
        if not memories:
            return None
        return render_memory_block(memories)

    async def assemble(
        self,
        agent_id: Optional[str],
        user_id: str,
        tenant_id: str,
        user_text: Optional[str],
    ) -> AssembledContext:
        agent = await self.load_agent(agent_id, tenant_id)
        if agent_id and agent is None:
            logger.warning(f"Agent {agent_id} not found for tenant {tenant_id}, using defaults")

        parts = [(agent or {}).get("instructions") or DEFAULT_INSTRUCTIONS]

        artifact_instructions = (agent or {}).get("artifact_instructions")
        if artifact_instructions:
            parts.append(artifact_instructions)

        knowledge_block = await self._knowledge_block(agent, tenant_id, user_text)
        if knowledge_block:
            parts.append(knowledge_block)

        memory_block = await self._memory_block(user_id, tenant_id)
        if memory_block:
            parts.append(memory_block)

        return AssembledContext(
            system_prompt="\n\n".join(parts),
            has_knowledge_base=knowledge_block is not None,
            has_memories=memory_block is not None,
            artifacts_enabled=bool(artifact_instructions),
            agent=agent,
        )
