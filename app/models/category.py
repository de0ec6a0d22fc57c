from sqlalchemy import Boolean, Column, ForeignKey, Integer, String

from app.db.base import Base


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )  # Null for system categories
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    is_system = Column(Boolean, default=False, nullable=False)
