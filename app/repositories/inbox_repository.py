from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.inbox_item import InboxItem, InboxSource
from app.repositories.base_repository import BaseRepository
from app.utils.clock import utcnow


class InboxRepository(BaseRepository[InboxItem]):
    """Repository for inbox items."""

    def __init__(self, db: Session):
        super().__init__(InboxItem, db)

    def get_by_external_id(self, user_id: int, external_id: str) -> Optional[InboxItem]:
        """Get a user's non-deleted inbox item by its provider dedup key."""
        return (
            self.db.query(InboxItem)
            .filter(
                InboxItem.user_id == user_id,
                InboxItem.external_id == external_id,
                InboxItem.is_deleted == False,  # noqa: E712
            )
            .first()
        )

    def get_by_integration_id(
        self,
        integration_id: int,
        source: Optional[InboxSource] = None,
        include_dismissed: bool = True,
    ) -> List[InboxItem]:
        """Get non-deleted inbox items that were created by an integration."""
        query = self.db.query(InboxItem).filter(
            InboxItem.integration_id == integration_id,
            InboxItem.is_deleted == False,  # noqa: E712
        )
        if source is not None:
            query = query.filter(InboxItem.source == source)
        if not include_dismissed:
            query = query.filter(InboxItem.is_dismissed == False)  # noqa: E712
        return query.order_by(InboxItem.id).all()

    def dismiss(self, item: InboxItem) -> InboxItem:
        """Mark an inbox item dismissed."""
        item.is_dismissed = True
        item.dismissed_at = utcnow()
        return self.save(item)

    def detach_integration(self, integration_id: int) -> int:
        """Null out the integration reference on every item, keeping the items."""
        count = (
            self.db.query(InboxItem)
            .filter(InboxItem.integration_id == integration_id)
            .update({InboxItem.integration_id: None}, synchronize_session="fetch")
        )
        self.db.commit()
        return count
