from sqlalchemy import JSON, Column, DateTime, String, Text

from .base import Base, utcnow


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    instructions = Column(Text, nullable=False)
    artifact_instructions = Column(Text, nullable=True)
    knowledge_base_id = Column(String(64), nullable=True)
    provider = Column(String(32), nullable=False, default="google")
    model = Column(String(100), nullable=False)
    parameters = Column(JSON, nullable=False, default=dict)  # temperature, top_p, max_tokens
    created_at = Column(DateTime, nullable=False, default=utcnow)
