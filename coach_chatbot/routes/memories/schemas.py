from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from coach_chatbot.models.memory import MemoryCategory, MemorySource


class MemoryCreate(BaseModel):
    """A fact to remember; an existing fact with the same category and key is overwritten"""

    category: MemoryCategory
    key: str = Field(..., min_length=1, max_length=200)
    value: str = Field(..., min_length=1, max_length=5000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "category": "business_info",
                "key": "business_name",
                "value": "Summit Leadership Coaching",
            }
        }
    )

    @field_validator("key", "value")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class MemoryUpdate(BaseModel):
    category: Optional[MemoryCategory] = None
    key: Optional[str] = Field(None, min_length=1, max_length=200)
    value: Optional[str] = Field(None, min_length=1, max_length=5000)


class MemoryOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    category: MemoryCategory
    key: str
    value: str
    source: MemorySource
    created_at: datetime
    updated_at: datetime


class MemoryList(BaseModel):
    memories: List[MemoryOut]
