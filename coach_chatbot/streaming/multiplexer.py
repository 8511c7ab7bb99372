"""One turn's outbound channel.

A producer task runs the primary model stream, hands tool calls to the
``ToolExecutor`` as concurrent tasks and writes every event into a single
``asyncio.Queue``; ``events()`` drains that queue for the HTTP response.

Turn lifecycle::

    ASSEMBLING_CONTEXT -> STREAMING -> (SUBGENERATING)* -> FINALIZING -> PERSISTED
                                   \\-> FAILED
"""

import asyncio
import enum
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Optional

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from pydantic import BaseModel, Field

from coach_chatbot.exceptions import ChatbotError
from coach_chatbot.llm.provider import ChatProvider, StepFinish, TextChunk, ToolCallRequest
from coach_chatbot.streaming.events import (
    ErrorEvent,
    FinishEvent,
    StartEvent,
    StreamEvent,
    TextDeltaEvent,
    Usage,
)
from coach_chatbot.streaming.tools import ToolExecutor, ToolOutcome

logger = logging.getLogger(__name__)


class TurnState(str, enum.Enum):
    ASSEMBLING_CONTEXT = "ASSEMBLING_CONTEXT"
    STREAMING = "STREAMING"
    SUBGENERATING = "SUBGENERATING"
    FINALIZING = "FINALIZING"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


class TurnOutcome(BaseModel):
    """Everything the completion callback persists for the assistant message."""

    text: str = ""
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = "stop"


Emit = Callable[[StreamEvent], Awaitable[None]]
Spawn = Callable[[Coroutine], asyncio.Task]

_END = object()


class StreamMultiplexer:
    def __init__(
        self,
        provider: ChatProvider,
        messages: list[BaseMessage],
        executor_factory: Callable[[Emit], ToolExecutor],
        on_complete: Callable[[TurnOutcome], Awaitable[Any]],
        *,
        conversation_id: str,
        message_id: str,
        max_tool_steps: int = 5,
        spawn: Optional[Spawn] = None,
        on_finished: Optional[Callable[[TurnOutcome], None]] = None,
    ) -> None:
        self.provider = provider
        self.messages = messages
        self.on_complete = on_complete
        self.on_finished = on_finished
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.max_tool_steps = max(1, max_tool_steps)
        self.spawn = spawn or asyncio.create_task

        self.state = TurnState.ASSEMBLING_CONTEXT
        self.queue: asyncio.Queue = asyncio.Queue()
        self.executor = executor_factory(self.emit)
        self._tool_tasks: list[asyncio.Task] = []
        self._producer: Optional[asyncio.Task] = None

    async def emit(self, event: StreamEvent) -> None:
        await self.queue.put(event)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield the turn's events in queue order until the producer is done."""
        self._producer = self.spawn(self._run())
        try:
            while True:
                event = await self.queue.get()
                if event is _END:
                    break
                yield event
        finally:
            # the consumer went away; persistence must still finish once started
            if not self._producer.done() and self.state not in (
                TurnState.FINALIZING,
                TurnState.PERSISTED,
            ):
                logger.info(f"Client disconnected, cancelling turn {self.message_id}")
                self._producer.cancel()

    async def _run(self) -> None:
        try:
            await self._produce()
        finally:
            self.queue.put_nowait(_END)

    async def _produce(self) -> None:
        try:
            await self.emit(
                StartEvent(message_id=self.message_id, conversation_id=self.conversation_id)
            )
            self.state = TurnState.STREAMING
            outcome = await self._run_steps()
        except asyncio.CancelledError:
            self.state = TurnState.FAILED
            await self._cancel_tool_tasks()
            raise
        except Exception as e:
            self.state = TurnState.FAILED
            await self._cancel_tool_tasks()
            await self._fail(e)
            return

        self.state = TurnState.FINALIZING
        persist_task = self.spawn(self.on_complete(outcome))
        try:
            await asyncio.shield(persist_task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state = TurnState.FAILED
            await self._fail(e)
            return

        self.state = TurnState.PERSISTED
        await self.emit(FinishEvent(finish_reason=outcome.finish_reason, usage=outcome.usage))
        if self.on_finished is not None:
            self.on_finished(outcome)

    async def _fail(self, error: Exception) -> None:
        if isinstance(error, ChatbotError):
            message, code = error.message, error.code
        else:
            message, code = "An unexpected error occurred", "internal_error"
        logger.error(f"Turn {self.message_id} failed: {error}", exc_info=True)
        await self.emit(ErrorEvent(message=message, code=code))

    async def _cancel_tool_tasks(self) -> None:
        for task in self._tool_tasks:
            task.cancel()
        if self._tool_tasks:
            await asyncio.gather(*self._tool_tasks, return_exceptions=True)
        self._tool_tasks = []

    async def _run_steps(self) -> TurnOutcome:
        history = list(self.messages)
        tools = self.executor.definitions
        outcome = TurnOutcome()
        text_parts: list[str] = []

        for step in range(self.max_tool_steps):
            step_text: list[str] = []
            step_calls: list[ToolCallRequest] = []

            async for event in self.provider.stream(history, tools):
                if isinstance(event, TextChunk):
                    step_text.append(event.text)
                    await self.emit(TextDeltaEvent(text=event.text))
                elif isinstance(event, ToolCallRequest):
                    self.state = TurnState.SUBGENERATING
                    step_calls.append(event)
                    self._tool_tasks.append(asyncio.create_task(self.executor.execute(event)))
                elif isinstance(event, StepFinish):
                    outcome.usage = outcome.usage + event.usage
                    outcome.finish_reason = event.finish_reason

            text_parts.extend(step_text)
            if not step_calls:
                break

            results: list[ToolOutcome] = await asyncio.gather(*self._tool_tasks)
            self._tool_tasks = []
            self.state = TurnState.STREAMING
            logger.info(f"Turn {self.message_id} step {step + 1} ran {len(step_calls)} tool calls")

            history.append(
                AIMessage(
                    content="".join(step_text),
                    tool_calls=[
                        {"id": call.id, "name": call.name, "args": call.arguments}
                        for call in step_calls
                    ],
                )
            )
            for call, result in zip(step_calls, results):
                outcome.tool_calls.append(
                    {"id": call.id, "name": call.name, "arguments": call.arguments}
                )
                outcome.tool_results.append({"toolCallId": call.id, "result": result.result})
                history.append(ToolMessage(content=result.reply, tool_call_id=call.id, name=call.name))
        else:
            logger.warning(f"Turn {self.message_id} stopped after {self.max_tool_steps} tool steps")

        outcome.text = "".join(text_parts)
        return outcome
