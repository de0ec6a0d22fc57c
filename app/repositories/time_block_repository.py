from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.time_block import TimeBlock
from app.repositories.base_repository import BaseRepository


class TimeBlockRepository(BaseRepository[TimeBlock]):
    """Repository for time blocks."""

    def __init__(self, db: Session):
        super().__init__(TimeBlock, db)

    def get_by_external_id(self, user_id: int, external_id: str) -> Optional[TimeBlock]:
        """Get a user's non-deleted block by its provider dedup key."""
        return (
            self.db.query(TimeBlock)
            .filter(
                TimeBlock.user_id == user_id,
                TimeBlock.external_id == external_id,
                TimeBlock.is_deleted == False,  # noqa: E712
            )
            .first()
        )

    def get_by_user_id(self, user_id: int) -> List[TimeBlock]:
        return (
            self.db.query(TimeBlock)
            .filter(TimeBlock.user_id == user_id, TimeBlock.is_deleted == False)  # noqa: E712
            .order_by(TimeBlock.date, TimeBlock.start_time)
            .all()
        )
