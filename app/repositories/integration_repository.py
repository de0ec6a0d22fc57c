import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import DuplicateResourceException
from app.models.integration import Integration, IntegrationProvider
from app.repositories.base_repository import BaseRepository

logger = logging.getLogger(__name__)


class IntegrationRepository(BaseRepository[Integration]):
    """Repository for connected provider accounts."""

    def __init__(self, db: Session):
        super().__init__(Integration, db)

    def get_by_provider(
        self, user_id: int, provider: IntegrationProvider
    ) -> Optional[Integration]:
        """Get a user's integration for one provider."""
        return self.get_by(user_id=user_id, provider=provider)

    def get_by_user_id(self, user_id: int) -> List[Integration]:
        """Get all integrations for a user."""
        return (
            self.db.query(Integration)
            .filter(Integration.user_id == user_id)
            .order_by(Integration.id)
            .all()
        )

    def get_all_with_active_tokens(self) -> List[Integration]:
        """Get every integration that still holds an access token."""
        return (
            self.db.query(Integration)
            .filter(Integration.access_token.isnot(None), Integration.access_token != "")
            .order_by(Integration.id)
            .all()
        )

    def create(self, obj_in: Dict[str, Any]) -> Integration:
        """
        Insert a new integration.

        The (user_id, provider) unique constraint is the final guard against
        two devices connecting the same provider at once; the loser of that
        race gets a DuplicateResourceException.
        """
        try:
            return super().create(obj_in)
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(
                f"Duplicate integration insert for user {obj_in.get('user_id')} "
                f"and provider {obj_in.get('provider')}: {e.orig}"
            )
            raise DuplicateResourceException(
                message="Integration already connected",
                code="INTEGRATION_ALREADY_CONNECTED",
                details={"provider": str(obj_in.get("provider"))},
            ) from e
