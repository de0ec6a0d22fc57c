from typing import List

from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog
from app.repositories.base_repository import BaseRepository


class AuditLogRepository(BaseRepository[AuditLog]):
    """Repository for audit log entries."""

    def __init__(self, db: Session):
        super().__init__(AuditLog, db)

    def get_by_user_id(self, user_id: int, action: str = None) -> List[AuditLog]:
        query = self.db.query(AuditLog).filter(AuditLog.user_id == user_id)
        if action:
            query = query.filter(AuditLog.action == action)
        return query.order_by(AuditLog.id).all()
