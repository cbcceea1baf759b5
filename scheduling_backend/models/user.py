"""User model definitions."""

from sqlalchemy import Column, Integer, String
from scheduling_backend.database import Base

ADMIN_ROLE = "admin"


class User(Base):
    """A staff account allowed to call the API."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    role = Column(String)  # admin/coordinator

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == ADMIN_ROLE
