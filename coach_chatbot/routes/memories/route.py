import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from coach_chatbot.auth import Identity, get_identity
from coach_chatbot.exceptions import ConflictError, NotFoundError
from coach_chatbot.models.memory import MemoryCategory, MemorySource
from coach_chatbot.routes.chatbot.route import get_orchestrator
from coach_chatbot.routes.chatbot.schemas import ErrorResponse
from coach_chatbot.routes.memories.schemas import MemoryCreate, MemoryList, MemoryOut, MemoryUpdate
from coach_chatbot.services.orchestrator import ChatOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=MemoryList, summary="List memories")
async def list_memories(
    category: Optional[MemoryCategory] = Query(None),
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    rows = await orchestrator.memory_store.list_memories(
        identity.user_id, identity.tenant_id, category
    )
    return MemoryList(memories=[MemoryOut.model_validate(r) for r in rows])


@router.post(
    "",
    response_model=MemoryOut,
    status_code=status.HTTP_201_CREATED,
    summary="Remember a fact",
)
async def create_memory(
    body: MemoryCreate,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    row, result = await orchestrator.memory_store.upsert_fact(
        identity.user_id,
        identity.tenant_id,
        body.category,
        body.key,
        body.value,
        source=MemorySource.MANUAL,
    )
    logger.info(f"Manual memory {body.category.value}/{body.key} {result} for user {identity.user_id}")
    return MemoryOut.model_validate(row)


@router.patch(
    "/{memory_id}",
    response_model=MemoryOut,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Edit a memory",
)
async def update_memory(
    memory_id: str,
    body: MemoryUpdate,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    data = body.model_dump(exclude_none=True)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
    try:
        row = await orchestrator.memory_store.update_memory(
            memory_id, identity.user_id, identity.tenant_id, data
        )
    except (NotFoundError, ConflictError) as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return MemoryOut.model_validate(row)


@router.delete(
    "/{memory_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Forget a memory",
)
async def delete_memory(
    memory_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.memory_store.delete_memory(memory_id, identity.user_id, identity.tenant_id)
    except NotFoundError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
