import logging

from sqlalchemy.orm import Session

from app.core.constants import SYSTEM_CATEGORIES
from app.models.category import Category

logger = logging.getLogger(__name__)


def seed_system_categories(db: Session) -> int:
    """Insert the fixed system categories that are missing. Returns the number created."""
    created = 0
    for data in SYSTEM_CATEGORIES:
        if db.get(Category, data["id"]) is None:
            db.add(Category(is_system=True, user_id=None, **data))
            created += 1

    if created:
        db.commit()
        logger.info(f"Seeded {created} system categories")
    return created
