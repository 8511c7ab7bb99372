import enum
import logging
import re
from functools import cache
from typing import Any, Dict, List, Optional

from celery import Celery
from langchain_text_splitters import RecursiveCharacterTextSplitter
from sqlalchemy.sql import text

from coach_chatbot.db import Database
from coach_chatbot.db.crud_helper import CRUDRegistry
from coach_chatbot.models.knowledge_base import KnowledgeBaseChunk
from coach_chatbot.settings import config
from coach_chatbot.utils.embeddings import embed_documents

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 150
EMBEDDING_QUEUE = "embedding"

text_splitter = RecursiveCharacterTextSplitter(
    chunk_size=CHUNK_SIZE,
    chunk_overlap=CHUNK_OVERLAP,
    keep_separator=True,
)

whitespace_pattern = re.compile(r"[ \t]+")
blank_lines_pattern = re.compile(r"\n{3,}")

app = Celery("knowledge_base_ingest", broker=config.celery_broker_url)
app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.task_track_started = True


class ChunkState(str, enum.Enum):
    PROCESSED = "PROCESSED"
    EMBEDDED = "EMBEDDED"
    ERROR = "ERROR"


@cache
def get_crud() -> CRUDRegistry:
    return CRUDRegistry(Database(config.db_url))


def clean_text(content: str) -> str:
    # keep paragraph breaks so the splitter can use them
    content = whitespace_pattern.sub(" ", content.replace("\r\n", "\n"))
    return blank_lines_pattern.sub("\n\n", content).strip()


def chunk_content(
    content: str,
    tenant_id: str,
    knowledge_base_id: str,
    document_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> List[Dict]:
    chunks = text_splitter.split_text(clean_text(content))
    return [
        {
            "tenant_id": tenant_id,
            "knowledge_base_id": knowledge_base_id,
            "document_id": document_id,
            "chunk_index": i,
            "content": chunk,
            "state": ChunkState.PROCESSED.value,
            "chunk_metadata": {**(metadata or {}), "length": len(chunk)},
        }
        for i, chunk in enumerate(chunks)
    ]


@app.task(
    name="process_document",
    max_retries=3,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=True,
)
def process_document(
    tenant_id: str,
    knowledge_base_id: str,
    document_id: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
):
    logger.info(f"Processing document {document_id} for knowledge base {knowledge_base_id}")
    crud = get_crud()
    chunks = chunk_content(content, tenant_id, knowledge_base_id, document_id, metadata)

    with crud.database.session() as session:
        crud.knowledge_base_chunks.delete_resource(
            where=[
                KnowledgeBaseChunk.tenant_id == tenant_id,
                KnowledgeBaseChunk.document_id == document_id,
            ],
            session=session,
        )
        for chunk in chunks:
            crud.knowledge_base_chunks.create_resource(chunk, session=session)

    for chunk in chunks:
        app.send_task(
            "embed_chunk",
            args=[tenant_id, document_id, chunk["chunk_index"]],
            queue=EMBEDDING_QUEUE,
        )
    logger.info(f"Queued {len(chunks)} chunks of document {document_id} for embedding")
    return len(chunks)


@app.task(name="embed_chunk", bind=True, max_retries=3, default_retry_delay=60)
def embed_chunk(self, tenant_id: str, document_id: str, chunk_index: int):
    crud = get_crud()
    where = [
        KnowledgeBaseChunk.tenant_id == tenant_id,
        KnowledgeBaseChunk.document_id == document_id,
        KnowledgeBaseChunk.chunk_index == chunk_index,
    ]
    try:
        chunk = crud.knowledge_base_chunks.get_resource(resource_id=None, where=where)
        if not chunk:
            logger.warning(f"Chunk not found: {document_id}:{chunk_index}")
            return

        vector = embed_documents([chunk["content"]])[0]
        crud.knowledge_base_chunks.update_resource(
            data={
                "content_vector": vector,
                "content_tsv": text("to_tsvector('english', content)"),
                "state": ChunkState.EMBEDDED.value,
                "error_message": None,
            },
            where=where,
        )
        logger.info(f"Embedded chunk {document_id}:{chunk_index}")

    except Exception as e:
        logger.error(f"Embedding failed for {document_id}:{chunk_index}: {e}")
        crud.knowledge_base_chunks.update_resource(
            data={"state": ChunkState.ERROR.value, "error_message": str(e)},
            where=where,
        )
        raise self.retry(exc=e)
