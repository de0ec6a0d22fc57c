import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.repositories.audit_log_repository import AuditLogRepository

logger = logging.getLogger("app.audit")


class AuditService:
    """
    Audit sink for integration lifecycle events.

    Each event is written to the audit_logs table and emitted as a
    structured log record for the log collector.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repository = AuditLogRepository(db)

    def record(
        self,
        action: str,
        user_id: int,
        entity_type: str = "Integration",
        entity_id: Optional[Any] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        extras = {
            "audit_action": action,
            "user_id": user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            **(new_values or {}),
        }
        logger.info(f"{action} for user {user_id}", extra={"extras": extras})

        try:
            self.repository.create(
                {
                    "user_id": user_id,
                    "action": action,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id) if entity_id is not None else None,
                    "old_values": json.dumps(old_values, default=str) if old_values else None,
                    "new_values": json.dumps(new_values, default=str) if new_values else None,
                }
            )
        except SQLAlchemyError as e:
            # The event is already in the log stream
            self.db.rollback()
            logger.error(f"Failed to persist audit entry {action}: {e}", exc_info=True)
