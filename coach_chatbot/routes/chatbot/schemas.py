from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from coach_chatbot.settings import config


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessagePart(BaseModel):
    type: str = Field(..., description="Part type; only text parts are read")
    text: Optional[str] = None


class UIMessage(CamelModel):
    """A client-side message as sent in full-history requests"""

    id: Optional[str] = None
    role: Literal["user", "assistant", "system"]
    content: Optional[str] = Field(None, description="Plain text content")
    parts: Optional[List[MessagePart]] = Field(None, description="Structured content parts")

    def text(self) -> str:
        if self.content:
            return self.content
        return "".join(p.text or "" for p in self.parts or [] if p.type == "text")

    def as_turn(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.text()}


class ChatRequest(CamelModel):
    """Request body for one chat turn; exactly one of message or messages"""

    conversation_id: Optional[str] = Field(None, description="Existing conversation to continue")
    message: Optional[str] = Field(None, min_length=1, max_length=10000, description="The user's message")
    messages: Optional[List[UIMessage]] = Field(None, description="Full client-side message history")
    model: str = Field(default_factory=lambda: config.gemini_model, description="Model identifier")
    agent_id: Optional[str] = Field(None, description="Agent whose instructions and knowledge base to use")
    parent_message_id: Optional[str] = Field(None, description="Branch the new user message from this message")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "conversationId": "a542db3f-0e80-4d34-8574-982966e038c6",
                "message": "Help me outline a launch plan for my coaching program",
                "model": "gemini-2.0-flash",
                "agentId": "agent_business_coach",
            }
        },
    )

    @model_validator(mode="after")
    def exactly_one_input(self) -> "ChatRequest":
        if (self.message is None) == (self.messages is None):
            raise ValueError("Provide exactly one of 'message' or 'messages'")
        if self.messages is not None and not self.messages:
            raise ValueError("'messages' must not be empty")
        return self


class MessageOut(CamelModel):
    """A stored conversation message"""

    id: str
    role: str = Field(..., description="user, assistant, system or tool")
    content: str
    tool_calls: Optional[List[dict[str, Any]]] = None
    tool_results: Optional[List[dict[str, Any]]] = None
    parent_message_id: Optional[str] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    total_tokens: Optional[int] = None
    sequence_order: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MessageOut":
        return cls.model_validate(row)


class ConversationSummary(CamelModel):
    id: str
    title: Optional[str] = None
    agent_id: Optional[str] = None
    model: str
    archived: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationSummary":
        metadata = row.get("conversation_metadata") or {}
        return cls.model_validate({**row, "archived": bool(metadata.get("archived"))})


class ConversationDetail(ConversationSummary):
    messages: List[MessageOut] = Field(default_factory=list)


class ConversationList(CamelModel):
    conversations: List[ConversationSummary]
    limit: int
    offset: int


class ArtifactUpdateRequest(BaseModel):
    content: str = Field(..., description="New artifact content")


class ErrorResponse(BaseModel):
    """Error response model"""

    detail: str = Field(..., description="Error message")

    model_config = ConfigDict(
        json_schema_extra={"example": {"detail": "Conversation not found"}}
    )
