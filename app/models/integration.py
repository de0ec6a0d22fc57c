import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.clock import utcnow


class IntegrationProvider(str, enum.Enum):
    GITHUB = "github"
    GOOGLE_CALENDAR = "google_calendar"


class Integration(Base):
    """
    A connected external account. One row per (user, provider).

    Tokens are stored encrypted; see TokenEncryptionService.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider = Column(Enum(IntegrationProvider), nullable=False)

    # OAuth tokens (encrypted at rest)
    access_token = Column(Text, nullable=False, default="")
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # External account info
    external_user_id = Column(String, nullable=False, default="")
    external_username = Column(String, nullable=True)
    external_avatar_url = Column(String, nullable=True)

    # Sync state
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    metadata_json = Column(Text, nullable=True)  # Provider-specific metadata

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="integrations")
    inbox_items = relationship("InboxItem", back_populates="integration")
