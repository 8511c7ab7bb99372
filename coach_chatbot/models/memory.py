import enum

from sqlalchemy import Column, DateTime, Index, String, Text

from .base import Base, utcnow


class MemoryCategory(str, enum.Enum):
    PERSONAL_INFO = "personal_info"
    BUSINESS_INFO = "business_info"
    TARGET_AUDIENCE = "target_audience"
    OFFERS = "offers"
    CURRENT_PROJECTS = "current_projects"
    CHALLENGES = "challenges"
    GOALS = "goals"


class MemorySource(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"
    AGENT = "agent"


class Memory(Base):
    __tablename__ = "memories"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    category = Column(String(32), nullable=False)
    key = Column(String(200), nullable=False)
    value = Column(Text, nullable=False)
    source = Column(String(16), nullable=False, default=MemorySource.MANUAL.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # (user, tenant, category, key) is unique by convention only; see MemoryStore.upsert_fact
    __table_args__ = (
        Index("memories_user_tenant_idx", "user_id", "tenant_id"),
        Index("memories_user_tenant_category_idx", "user_id", "tenant_id", "category"),
    )
