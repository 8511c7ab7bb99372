"""Background extraction of durable user facts after a completed turn."""

import logging
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel, ValidationError, field_validator

from coach_chatbot.exceptions import ExtractionError
from coach_chatbot.llm.provider import ProviderFactory
from coach_chatbot.models.memory import MemoryCategory, MemorySource
from coach_chatbot.services.memory_store import UNCHANGED, MemoryStore
from coach_chatbot.services.persistence import TurnPersistenceStore
from coach_chatbot.settings import Config, config

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = """\
You are a memory extraction assistant for a business coaching platform. \
Analyze the conversation and extract durable facts about the user worth \
remembering for future conversations.

Extract ONLY information useful in future sessions:
- Personal facts (name, role, location, preferences)
- Business details (company, industry, revenue model)
- Target audience and ideal customers
- Products, services and offers, including pricing
- Current projects and launches
- Challenges and obstacles
- Goals and milestones

Rules:
- Do NOT extract transient task details or one-off questions.
- Use a short, stable snake_case key per fact (e.g. "business_name", "launch_date").
- Each value should be a concise, self-contained statement.
- If nothing is worth remembering, return an empty list.

Respond ONLY with JSON of the form:
{"memories": [{"category": "...", "key": "...", "value": "..."}]}
Category must be one of: %s""" % ", ".join(c.value for c in MemoryCategory)


class ExtractedFact(BaseModel):
    category: str
    key: str
    value: str

    @field_validator("key", "value")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


def render_transcript(messages: list[dict[str, Any]]) -> str:
    lines = []
    for message in messages:
        if message["role"] not in ("user", "assistant") or not message["content"]:
            continue
        speaker = "User" if message["role"] == "user" else "Assistant"
        lines.append(f"{speaker}: {message['content']}")
    return "\n\n".join(lines)


def parse_facts(raw: str) -> list[ExtractedFact]:
    """Parse the model reply, dropping unknown categories and blank keys or values."""
    try:
        payload = parse_json_markdown(raw)
    except Exception as e:
        raise ExtractionError(f"Extraction reply is not JSON: {e}") from e
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("memories") or []
    else:
        raise ExtractionError("Extraction reply has an unexpected shape")

    known = {c.value for c in MemoryCategory}
    facts = []
    for item in items:
        try:
            fact = ExtractedFact.model_validate(item)
        except ValidationError:
            logger.debug(f"Skipping malformed memory item: {item!r}")
            continue
        if fact.category not in known or not fact.key or not fact.value:
            continue
        facts.append(fact)
    return facts


class MemoryExtractor:
    def __init__(
        self,
        store: TurnPersistenceStore,
        memory_store: MemoryStore,
        provider_factory: ProviderFactory,
        settings: Config = config,
    ) -> None:
        self.store = store
        self.memory_store = memory_store
        self.provider_factory = provider_factory
        self.settings = settings

    async def maybe_extract(self, conversation_id: str, user_id: str, tenant_id: str) -> int:
        """
        Run extraction when the conversation is long enough.

        Returns the number of facts created or changed. Never raises: a failed
        extraction is logged and the finished turn is left as it is.
        """
        try:
            count = await self.store.count_messages(conversation_id, tenant_id)
            if count < self.settings.memory_extraction_threshold:
                return 0
            return await self.extract(conversation_id, user_id, tenant_id)
        except ExtractionError as e:
            logger.warning(f"Memory extraction failed for {conversation_id}: {e.message}")
        except Exception as e:
            logger.error(f"Memory extraction crashed for {conversation_id}: {e}", exc_info=True)
        return 0

    async def extract(self, conversation_id: str, user_id: str, tenant_id: str) -> int:
        messages = await self.store.recent_messages(
            conversation_id, tenant_id, self.settings.memory_extraction_window
        )
        transcript = render_transcript(messages)
        if not transcript:
            return 0

        try:
            provider = self.provider_factory(self.settings.memory_model, {"temperature": 0.1})
            raw = await provider.complete(
                [
                    SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
                    HumanMessage(content=f"Conversation to analyze:\n\n{transcript}"),
                ]
            )
        except Exception as e:
            raise ExtractionError(f"Extraction model call failed: {e}") from e

        changed = 0
        for fact in parse_facts(raw):
            _, result = await self.memory_store.upsert_fact(
                user_id, tenant_id, MemoryCategory(fact.category), fact.key, fact.value,
                source=MemorySource.AUTO,
            )
            if result != UNCHANGED:
                changed += 1
        logger.info(f"Memory extraction for {conversation_id} stored {changed} facts")
        return changed
