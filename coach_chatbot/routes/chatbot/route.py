import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from coach_chatbot.auth import Identity, get_identity
from coach_chatbot.exceptions import ChatbotError
from coach_chatbot.routes.chatbot.schemas import (
    ArtifactUpdateRequest,
    ChatRequest,
    ConversationDetail,
    ConversationList,
    ConversationSummary,
    ErrorResponse,
    MessageOut,
)
from coach_chatbot.services.orchestrator import ChatOrchestrator
from coach_chatbot.streaming.events import to_sse

logger = logging.getLogger(__name__)

router = APIRouter()

CONVERSATION_HEADER = "X-Conversation-Id"


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def to_http_error(e: ChatbotError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "",
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Send a chat message",
    description="Runs one chat turn and streams text and artifact events as Server-Sent Events",
)
async def chat(
    body: ChatRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """
    Stream one chat turn.

    Errors raised before the stream opens (configuration, ownership) are
    returned as JSON; anything later arrives as a terminal ``error`` event.
    """
    try:
        turn = await orchestrator.start_turn(
            identity,
            model=body.model,
            message=body.message,
            messages=[m.as_turn() for m in body.messages] if body.messages else None,
            conversation_id=body.conversation_id,
            agent_id=body.agent_id,
            parent_message_id=body.parent_message_id,
        )
    except ChatbotError as e:
        logger.warning(f"Chat turn rejected: {e.message}")
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error starting chat turn: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process chat request",
        )

    async def streamer():
        async for event in turn.events:
            yield to_sse(event)

    return StreamingResponse(
        streamer(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            CONVERSATION_HEADER: turn.conversation_id,
        },
    )


@router.get(
    "",
    response_model=ConversationList,
    summary="List conversations",
    description="Conversations of the current user, most recently active first",
)
async def list_conversations(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    archived: bool = Query(False),
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    rows = await orchestrator.store.list_conversations(
        identity.user_id, identity.tenant_id, limit=limit, offset=offset, archived=archived
    )
    return ConversationList(
        conversations=[ConversationSummary.from_row(r) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{conversation_id}",
    response_model=ConversationDetail,
    responses={404: {"model": ErrorResponse}},
    summary="Get conversation",
    description="A conversation with all of its messages",
)
async def get_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    conversation = await orchestrator.store.get_conversation(
        conversation_id, identity.tenant_id, identity.user_id
    )
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    messages = await orchestrator.store.list_messages(conversation_id, identity.tenant_id)
    summary = ConversationSummary.from_row(conversation)
    return ConversationDetail(
        **summary.model_dump(), messages=[MessageOut.from_row(m) for m in messages]
    )


@router.delete(
    "/{conversation_id}",
    response_model=ConversationSummary,
    responses={404: {"model": ErrorResponse}},
    summary="Archive conversation",
    description="Marks the conversation as archived; nothing is deleted",
)
async def archive_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    try:
        conversation = await orchestrator.store.archive_conversation(
            conversation_id, identity.tenant_id, identity.user_id
        )
    except ChatbotError as e:
        raise to_http_error(e)
    logger.info(f"Archived conversation {conversation_id}")
    return ConversationSummary.from_row(conversation)


@router.patch(
    "/{conversation_id}/messages/{message_id}/artifacts/{tool_call_id}",
    response_model=MessageOut,
    responses={404: {"model": ErrorResponse}},
    summary="Edit artifact content",
    description="Replaces the content of one artifact stored on an assistant message",
)
async def update_artifact(
    conversation_id: str,
    message_id: str,
    tool_call_id: str,
    body: ArtifactUpdateRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    conversation = await orchestrator.store.get_conversation(
        conversation_id, identity.tenant_id, identity.user_id
    )
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    try:
        message = await orchestrator.store.update_artifact_content(
            conversation_id, identity.tenant_id, message_id, tool_call_id, body.content
        )
    except ChatbotError as e:
        raise to_http_error(e)
    return MessageOut.from_row(message)
