"""Tagged events carried on the outbound turn stream.

Each event is serialized as one Server-Sent Events ``data:`` line. Field names
go over the wire in camelCase (``finishReason``, ``finalObject``).
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class ArtifactKind(str, Enum):
    TEXT = "text"
    CODE = "code"
    HTML = "html"
    REACT = "react"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Usage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ArtifactDocument(WireModel):
    """Fully materialized artifact; also the nested generation's output schema."""

    title: str = Field(description="Short title of the artifact")
    kind: ArtifactKind = Field(description="One of: text, code, html, react")
    content: str = Field(default="", description="The complete artifact body")
    language: Optional[str] = Field(
        default=None, description="Programming language when kind is code"
    )


class StartEvent(WireModel):
    type: Literal["start"] = "start"
    message_id: str
    conversation_id: str


class TextDeltaEvent(WireModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ArtifactMetadataEvent(WireModel):
    type: Literal["artifact-metadata"] = "artifact-metadata"
    id: str
    title: str
    kind: ArtifactKind


class ArtifactDeltaEvent(WireModel):
    type: Literal["artifact-delta"] = "artifact-delta"
    id: str
    content: str


class ArtifactCompleteEvent(WireModel):
    type: Literal["artifact-complete"] = "artifact-complete"
    id: str
    final_object: ArtifactDocument
    error: Optional[str] = None


class FinishEvent(WireModel):
    type: Literal["finish"] = "finish"
    finish_reason: str
    usage: Usage


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    message: str
    code: str


StreamEvent = Annotated[
    Union[
        StartEvent,
        TextDeltaEvent,
        ArtifactMetadataEvent,
        ArtifactDeltaEvent,
        ArtifactCompleteEvent,
        FinishEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENTS = (FinishEvent, ErrorEvent)

_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(data: Union[str, bytes, dict[str, Any]]) -> StreamEvent:
    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


def to_sse(event: StreamEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True, exclude_none=True)}\n\n"
