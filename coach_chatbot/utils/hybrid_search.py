import logging
from abc import ABC, abstractmethod
from typing import Any

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import text

from coach_chatbot.db import Database
from coach_chatbot.utils.embeddings import embed_query

logger = logging.getLogger(__name__)


class Retriever(ABC):
    @abstractmethod
    async def search(
        self,
        query: str,
        tenant_id: str,
        knowledge_base_id: str,
        limit: int = 5,
        min_similarity: float = 0.0,
    ) -> list[dict[str, Any]]:
        """Return the best matching chunks as dicts with ``content`` and ``score``."""


HYBRID_SQL = """
    SELECT id, document_id, chunk_index, content,
        1 - (content_vector <=> CAST(:vec AS vector)) AS similarity,
        :vector_weight * (1 - (content_vector <=> CAST(:vec AS vector))) +
        :text_weight * COALESCE(ts_rank(content_tsv, plainto_tsquery('english', :q)), 0) AS score
    FROM knowledge_base_chunks
    WHERE tenant_id = :tenant_id
        AND knowledge_base_id = :kb_id
        AND content_vector IS NOT NULL
        AND 1 - (content_vector <=> CAST(:vec AS vector)) >= :min_similarity
    ORDER BY score DESC
    LIMIT :k
"""


class PgVectorRetriever(Retriever):
    """Hybrid pgvector + full-text search over one tenant's knowledge base."""

    def __init__(self, database: Database, vector_weight: float = 0.7, text_weight: float = 0.3) -> None:
        self.database = database
        self.vector_weight = vector_weight
        self.text_weight = text_weight

    def hybrid_search(self, query, tenant_id, knowledge_base_id, limit, min_similarity):
        query_vec = embed_query(query)
        vector_str = f"[{','.join(map(str, query_vec))}]"
        with self.database.session() as session:
            result = session.execute(
                text(HYBRID_SQL),
                {
                    "q": query,
                    "vec": vector_str,
                    "tenant_id": tenant_id,
                    "kb_id": knowledge_base_id,
                    "min_similarity": min_similarity,
                    "vector_weight": self.vector_weight,
                    "text_weight": self.text_weight,
                    "k": limit,
                },
            )
            return [dict(row._mapping) for row in result.fetchall()]

    async def search(self, query, tenant_id, knowledge_base_id, limit=5, min_similarity=0.0):
        rows = await run_in_threadpool(
            self.hybrid_search, query, tenant_id, knowledge_base_id, limit, min_similarity
        )
        logger.info(f"Hybrid search in kb {knowledge_base_id} returned {len(rows)} chunks")
        return rows
