from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import TSVECTOR
from pgvector.sqlalchemy import Vector

from .base import Base, utcnow

EMBEDDING_DIMENSIONS = 384  # all-MiniLM-L6-v2


class KnowledgeBaseChunk(Base):
    __tablename__ = "knowledge_base_chunks"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    knowledge_base_id = Column(String(64), nullable=False, index=True)
    document_id = Column(String(64), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)  # order of chunk within document
    content = Column(Text, nullable=False)
    content_vector = Column(Vector(EMBEDDING_DIMENSIONS), nullable=True)
    content_tsv = Column(TSVECTOR)
    state = Column(String(32), nullable=False)  # PROCESSED, EMBEDDED, ERROR
    error_message = Column(Text)
    chunk_metadata = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunk"),
        Index("idx_kb_vector_search", "content_vector", postgresql_using="ivfflat"),
        Index("idx_kb_tsv_search", "content_tsv", postgresql_using="gin"),
    )
