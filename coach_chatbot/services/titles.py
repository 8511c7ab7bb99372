import logging

from langchain_core.messages import HumanMessage, SystemMessage

from coach_chatbot.llm.provider import ProviderFactory
from coach_chatbot.services.persistence import TurnPersistenceStore
from coach_chatbot.settings import Config, config

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Generate a short title (at most 6 words) for a conversation that starts with "
    "the message below. Reply with the title only, without quotes or punctuation at the end."
)


class TitleGenerator:
    """Replaces the fallback title of a new conversation with a generated one."""

    def __init__(self, store: TurnPersistenceStore, provider_factory: ProviderFactory, settings: Config = config) -> None:
        self.store = store
        self.provider_factory = provider_factory
        self.settings = settings

    async def generate(self, conversation_id: str, tenant_id: str, first_user_text: str) -> None:
        try:
            provider = self.provider_factory(self.settings.title_model, {"temperature": 0.3})
            reply = await provider.complete(
                [SystemMessage(content=TITLE_PROMPT), HumanMessage(content=first_user_text)]
            )
            title = reply.strip().strip("\"'").strip()
            if not title:
                return
            await self.store.update_title(conversation_id, tenant_id, title)
            logger.info(f"Generated title for {conversation_id}: {title}")
        except Exception as e:
            # the fallback title stays
            logger.warning(f"Title generation failed for {conversation_id}: {e}")
