"""Client-side consumer of the turn event stream.

``apply_event`` folds one event into a ``ChatState``. ``MailboxReducer`` routes
events to one mailbox per target id (the assistant message, or an artifact) and
applies each mailbox strictly one event at a time, so a slow listener can never
see two updates for the same target interleave.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from coach_chatbot.streaming.events import (
    ArtifactCompleteEvent,
    ArtifactDeltaEvent,
    ArtifactKind,
    ArtifactMetadataEvent,
    ErrorEvent,
    FinishEvent,
    StartEvent,
    StreamEvent,
    TextDeltaEvent,
    Usage,
)

logger = logging.getLogger(__name__)

PENDING_MESSAGE_ID = "assistant"


class ArtifactView(BaseModel):
    id: str
    title: str
    kind: ArtifactKind
    content: str = ""
    language: Optional[str] = None
    complete: bool = False
    error: Optional[str] = None


class AssistantMessageView(BaseModel):
    id: str = PENDING_MESSAGE_ID
    conversation_id: Optional[str] = None
    text: str = ""
    artifact_ids: list[str] = Field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.finish_reason is not None or self.error is not None


class ChatState(BaseModel):
    message: AssistantMessageView = Field(default_factory=AssistantMessageView)
    artifacts: dict[str, ArtifactView] = Field(default_factory=dict)


def apply_event(state: ChatState, event: StreamEvent) -> ChatState:
    """Fold one event into ``state``; raises on an event type it does not know."""
    message = state.message
    if isinstance(event, StartEvent):
        message.id = event.message_id
        message.conversation_id = event.conversation_id
    elif isinstance(event, TextDeltaEvent):
        message.text += event.text
    elif isinstance(event, ArtifactMetadataEvent):
        state.artifacts[event.id] = ArtifactView(id=event.id, title=event.title, kind=event.kind)
        if event.id not in message.artifact_ids:
            message.artifact_ids.append(event.id)
    elif isinstance(event, ArtifactDeltaEvent):
        artifact = state.artifacts.get(event.id)
        if artifact is None:
            raise ValueError(f"artifact-delta for unknown artifact {event.id}")
        artifact.content += event.content
    elif isinstance(event, ArtifactCompleteEvent):
        final = event.final_object
        artifact = state.artifacts.setdefault(
            event.id, ArtifactView(id=event.id, title=final.title, kind=final.kind)
        )
        artifact.title = final.title
        artifact.kind = final.kind
        artifact.content = final.content
        artifact.language = final.language
        artifact.error = event.error
        artifact.complete = True
    elif isinstance(event, FinishEvent):
        message.finish_reason = event.finish_reason
        message.usage = event.usage
    elif isinstance(event, ErrorEvent):
        message.error = event.message
    else:
        raise TypeError(f"Unhandled stream event: {type(event).__name__}")
    return state


def mailbox_key(event: StreamEvent, message_id: str) -> str:
    if isinstance(event, StartEvent):
        return event.message_id
    if isinstance(event, (ArtifactMetadataEvent, ArtifactDeltaEvent, ArtifactCompleteEvent)):
        return event.id
    return message_id


Listener = Callable[[ChatState, StreamEvent], Awaitable[None]]


class MailboxReducer:
    """
    Applies events through one serialized queue per target id.

    Events for the same id are applied in arrival order and each apply awaits
    the listener before the next event for that id is taken. Different ids
    progress independently.
    """

    def __init__(self, state: Optional[ChatState] = None, listener: Optional[Listener] = None) -> None:
        self.state = state or ChatState()
        self.listener = listener
        self._message_id = PENDING_MESSAGE_ID
        self._mailboxes: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}

    def dispatch(self, event: StreamEvent) -> None:
        if isinstance(event, StartEvent):
            self._message_id = event.message_id
        key = mailbox_key(event, self._message_id)
        mailbox = self._mailboxes.get(key)
        if mailbox is None:
            mailbox = self._mailboxes[key] = asyncio.Queue()
            self._workers[key] = asyncio.create_task(self._work(key, mailbox))
        mailbox.put_nowait(event)

    async def _work(self, key: str, mailbox: asyncio.Queue) -> None:
        while True:
            event = await mailbox.get()
            try:
                apply_event(self.state, event)
                if self.listener is not None:
                    await self.listener(self.state, event)
            except Exception as e:
                logger.error(f"Failed to apply {event.type} to {key}: {e}", exc_info=True)
            finally:
                mailbox.task_done()

    async def drain(self) -> ChatState:
        """Wait until every dispatched event has been applied."""
        await asyncio.gather(*(mailbox.join() for mailbox in list(self._mailboxes.values())))
        return self.state

    async def close(self) -> None:
        await self.drain()
        for worker in self._workers.values():
            worker.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._mailboxes.clear()
