from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.models.integration import IntegrationProvider
from app.utils.clock import utcnow


class TimeBlock(Base):
    __tablename__ = "time_blocks"
    __table_args__ = (
        Index("ix_time_blocks_user_external_id", "user_id", "external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)

    title = Column(String, nullable=False)
    subtitle = Column(String, nullable=True)

    # Scheduling
    date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    is_completed = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    # External reference (set for blocks created by a sync)
    external_id = Column(String, nullable=True)
    external_url = Column(String, nullable=True)
    external_source = Column(Enum(IntegrationProvider), nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category")
