from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from .base import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200))
    agent_id = Column(String(64), nullable=True, index=True)
    model = Column(String(100), nullable=False)
    conversation_metadata = Column("metadata", JSON, nullable=False, default=dict)  # {"archived": bool}
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("conversations_user_tenant_idx", "user_id", "tenant_id"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, index=True)
    conversation_id = Column(
        String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String(64), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user, assistant, system, tool
    content = Column(Text, nullable=False, default="")
    tool_calls = Column(JSON, nullable=True)  # [{id, name, arguments}]
    tool_results = Column(JSON, nullable=True)  # [{toolCallId, result}]
    parent_message_id = Column(String(64), nullable=True, index=True)
    model = Column(String(100))
    finish_reason = Column(String(32))
    prompt_tokens = Column(Integer)
    completion_tokens = Column(Integer)
    total_tokens = Column(Integer)
    sequence_order = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("messages_conversation_sequence_idx", "conversation_id", "sequence_order"),
    )
