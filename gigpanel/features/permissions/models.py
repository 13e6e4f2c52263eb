"""
Persisted layout of the permission core.

- permissions / roles: seeded from the catalog, rarely change
- role_permissions: one grant per (role, permission, mode)
- user_restricted_permissions: per-user revocations
- system_settings: JSON settings rows holding feature flags (written by the
  settings service, only read here)
"""
from datetime import datetime
from typing import Any
from sqlalchemy import String, ForeignKey, Boolean, JSON, Text, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from gigpanel.core.database.base import Base, TimestampMixin, generate_ulid


class Permission(Base, TimestampMixin):
    """A catalog entry, keyed by its dotted permission key."""
    __tablename__ = "permissions"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    group: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Permission(key={self.key!r}, group={self.group})>"


class Role(Base, TimestampMixin):
    """One of the fixed admin panel / marketplace roles."""
    __tablename__ = "roles"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    label: Mapped[str] = mapped_column(String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<Role(key={self.key!r})>"


class RolePermission(Base, TimestampMixin):
    """
    A grant: whether ``role`` may use ``permission`` while in ``mode``.

    A missing row means the same as allow=False.
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_key", "permission_key", "mode", name="uq_role_permission_mode"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_key: Mapped[str] = mapped_column(
        String(32), ForeignKey("roles.key", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_key: Mapped[str] = mapped_column(
        String(100), ForeignKey("permissions.key", ondelete="CASCADE"), nullable=False, index=True
    )
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="all")
    allow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"<RolePermission(role={self.role_key}, permission={self.permission_key}, "
            f"mode={self.mode}, allow={self.allow})>"
        )


class UserRestrictedPermission(Base):
    """A permission explicitly revoked for one user."""
    __tablename__ = "user_restricted_permissions"

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    permission_key: Mapped[str] = mapped_column(
        String(100), ForeignKey("permissions.key", ondelete="CASCADE"), primary_key=True
    )
    restricted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    restricted_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    def __repr__(self) -> str:
        return f"<UserRestrictedPermission(user_id={self.user_id}, permission={self.permission_key})>"


class SystemSetting(Base, TimestampMixin):
    """
    A settings row. Feature flags live inside JSON values, e.g.
    key="features.transactions", value={"approveEnabled": false}.
    """
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(26), nullable=True)

    def __repr__(self) -> str:
        return f"<SystemSetting(key={self.key!r})>"
