"""
SQLAlchemy declarative base and common model utilities.

Every persisted RBAC record inherits from Base.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        from gigpanel.core.database.base import Base

        class Role(Base):
            __tablename__ = "roles"

            key: Mapped[str] = mapped_column(String(32), primary_key=True)
    """
    pass


class TimestampMixin:
    """
    Adds created_at and updated_at columns.

    Seeded catalog rows and runtime grant edits both carry them, so the admin
    panel can show when a grant last changed.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
