import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.clock import utcnow


class InboxSource(str, enum.Enum):
    MANUAL = "manual"
    GITHUB = "github"
    GOOGLE_CALENDAR = "google_calendar"


class InboxItemType(str, enum.Enum):
    TASK = "task"
    UPDATE = "update"
    REMINDER = "reminder"
    EVENT = "event"


class InboxPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InboxItem(Base):
    __tablename__ = "inbox_items"
    __table_args__ = (
        Index("ix_inbox_items_user_external_id", "user_id", "external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Nulled, never cascaded, when the integration is removed
    integration_id = Column(
        Integer,
        ForeignKey("integrations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    source = Column(Enum(InboxSource), nullable=False, default=InboxSource.MANUAL)
    type = Column(Enum(InboxItemType), nullable=False, default=InboxItemType.TASK)
    priority = Column(Enum(InboxPriority), nullable=False, default=InboxPriority.MEDIUM)

    # External reference
    external_id = Column(String, nullable=True)
    external_url = Column(String, nullable=True)

    # Status
    is_dismissed = Column(Boolean, default=False, nullable=False)
    dismissed_at = Column(DateTime, nullable=True)
    is_scheduled = Column(Boolean, default=False, nullable=False)
    scheduled_block_id = Column(Integer, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    integration = relationship("Integration", back_populates="inbox_items")
