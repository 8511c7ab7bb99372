"""Model invocation boundary.

The orchestrator only sees ``ChatProvider``: a primary stream of text chunks and
completed tool calls, a partial-object stream for structured generation, and a
plain completion call. ``LangChainChatProvider`` adapts any LangChain chat model
to it; ``build_provider`` is the production factory (Gemini).
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Optional, Type, Union

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessageChunk, BaseMessage, SystemMessage
from langchain_core.output_parsers import JsonOutputParser
from langchain_core.utils.json import parse_partial_json
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, Field

from coach_chatbot.exceptions import ConfigurationError, ProviderError
from coach_chatbot.settings import Config, config
from coach_chatbot.streaming.events import Usage

logger = logging.getLogger(__name__)


class TextChunk(BaseModel):
    text: str


class ToolCallRequest(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class StepFinish(BaseModel):
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


ProviderEvent = Union[TextChunk, ToolCallRequest, StepFinish]


class ChatProvider(ABC):
    model_name: str

    @abstractmethod
    def stream(
        self,
        messages: list[BaseMessage],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model step; ends with exactly one ``StepFinish``."""

    @abstractmethod
    def stream_structured(
        self, messages: list[BaseMessage], schema: Type[BaseModel]
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream progressively more complete partial objects for ``schema``."""

    @abstractmethod
    async def complete(self, messages: list[BaseMessage]) -> str:
        """Single non-streamed completion returning the text."""


ProviderFactory = Callable[[str, Optional[dict[str, Any]]], ChatProvider]


def content_text(content: Union[str, list]) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def with_instructions(messages: list[BaseMessage], instructions: str) -> list[BaseMessage]:
    """Fold extra instructions into the leading system message."""
    if messages and isinstance(messages[0], SystemMessage):
        head = messages[0]
        merged = SystemMessage(content=f"{content_text(head.content)}\n\n{instructions}")
        return [merged, *messages[1:]]
    return [SystemMessage(content=instructions), *messages]


class LangChainChatProvider(ChatProvider):
    def __init__(self, chat_model: BaseChatModel, model_name: str) -> None:
        self.chat_model = chat_model
        self.model_name = model_name

    async def stream(self, messages, tools=None):
        runnable = self.chat_model.bind_tools(tools) if tools else self.chat_model
        gathered: Optional[AIMessageChunk] = None
        emitted: set[int] = set()
        tool_call_seen = False
        try:
            async for chunk in runnable.astream(messages):
                text = content_text(chunk.content)
                if text:
                    yield TextChunk(text=text)
                gathered = chunk if gathered is None else gathered + chunk
                if chunk.tool_call_chunks:
                    tool_call_seen = True
                    # a call is complete once a higher index starts streaming
                    indexes = [c["index"] for c in chunk.tool_call_chunks if c.get("index") is not None]
                    streaming_index = max(indexes) if indexes else None
                    for call in self._completed_tool_calls(gathered, emitted, streaming_index):
                        yield call
            if gathered is not None:
                for call in self._completed_tool_calls(gathered, emitted, None):
                    yield call
        except Exception as e:
            logger.error(f"Model stream failed for {self.model_name}: {e}", exc_info=True)
            raise ProviderError(f"Model stream failed: {e}") from e

        yield StepFinish(
            finish_reason="tool-calls" if tool_call_seen else self._finish_reason(gathered),
            usage=self._usage(gathered),
        )

    async def stream_structured(self, messages, schema):
        parser = JsonOutputParser(pydantic_object=schema)
        prompt = with_instructions(messages, parser.get_format_instructions())
        chain = self.chat_model | parser
        try:
            async for partial in chain.astream(prompt):
                if isinstance(partial, dict):
                    yield partial
        except Exception as e:
            raise ProviderError(f"Structured generation failed: {e}") from e

    async def complete(self, messages):
        try:
            result = await self.chat_model.ainvoke(messages)
        except Exception as e:
            raise ProviderError(f"Completion failed: {e}") from e
        return content_text(result.content)

    @staticmethod
    def _completed_tool_calls(gathered, emitted, streaming_index):
        for position, tool_chunk in enumerate(gathered.tool_call_chunks):
            if position in emitted:
                continue
            index = tool_chunk.get("index")
            if streaming_index is not None and index is not None and index >= streaming_index:
                continue
            if not tool_chunk.get("name"):
                continue
            emitted.add(position)
            raw_args = tool_chunk.get("args") or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                arguments = parse_partial_json(raw_args) or {}
            yield ToolCallRequest(
                id=tool_chunk.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=tool_chunk["name"],
                arguments=arguments,
            )

    @staticmethod
    def _finish_reason(gathered: Optional[AIMessageChunk]) -> str:
        if gathered is None:
            return "stop"
        reason = gathered.response_metadata.get("finish_reason") or "stop"
        return str(reason).lower()

    @staticmethod
    def _usage(gathered: Optional[AIMessageChunk]) -> Usage:
        if gathered is None or not gathered.usage_metadata:
            return Usage()
        meta = gathered.usage_metadata
        return Usage(
            prompt_tokens=meta.get("input_tokens", 0),
            completion_tokens=meta.get("output_tokens", 0),
            total_tokens=meta.get("total_tokens", 0),
        )


def build_provider(
    model_name: str,
    parameters: Optional[dict[str, Any]] = None,
    settings: Config = config,
) -> ChatProvider:
    if not settings.gemini_api_key:
        raise ConfigurationError("AI provider API key not configured")
    if not model_name.startswith("gemini"):
        raise ConfigurationError(f"Unsupported model: {model_name}")

    parameters = parameters or {}
    chat_model = ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=settings.gemini_api_key,
        temperature=parameters.get("temperature", 0.7),
        top_p=parameters.get("top_p"),
        max_output_tokens=parameters.get("max_tokens"),
    )
    return LangChainChatProvider(chat_model, model_name)
