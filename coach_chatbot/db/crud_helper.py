from coach_chatbot.db import CRUDCapability, Database
from coach_chatbot.models.agent import Agent
from coach_chatbot.models.chat import Conversation, Message
from coach_chatbot.models.knowledge_base import KnowledgeBaseChunk
from coach_chatbot.models.memory import Memory


class ConversationCRUD(CRUDCapability[Conversation]):
    resource_db = Conversation


class ChatMessageCRUD(CRUDCapability[Message]):
    resource_db = Message


class AgentCRUD(CRUDCapability[Agent]):
    resource_db = Agent


class MemoryCRUD(CRUDCapability[Memory]):
    resource_db = Memory


class KnowledgeBaseChunkCRUD(CRUDCapability[KnowledgeBaseChunk]):
    resource_db = KnowledgeBaseChunk


CHAT_TABLES = [
    Conversation.__table__,
    Message.__table__,
    Agent.__table__,
    Memory.__table__,
]


class CRUDRegistry:
    """One CRUD helper per table, all bound to the same database handle."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.conversations = ConversationCRUD(Conversation, database)
        self.messages = ChatMessageCRUD(Message, database)
        self.agents = AgentCRUD(Agent, database)
        self.memories = MemoryCRUD(Memory, database)
        self.knowledge_base_chunks = KnowledgeBaseChunkCRUD(KnowledgeBaseChunk, database)
