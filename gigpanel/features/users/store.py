"""
Role assignments stored in user_roles.
"""
from typing import List, Optional

from sqlalchemy import select, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gigpanel.features.permissions.audit import AuditEvent, AuditSink, LoggingAuditSink
from gigpanel.features.permissions.exceptions import UserNotFound
from gigpanel.features.permissions.roles import RoleKey, effective_role
from gigpanel.features.permissions.store import open_session
from gigpanel.features.users.models import User, user_roles
from gigpanel.utils import get_logger


log = get_logger(__name__)


class UserRoleStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], audit: AuditSink | None = None):
        self._session_factory = session_factory
        self._audit = audit or LoggingAuditSink()

    async def get_role_keys(self, user_id: str) -> List[RoleKey]:
        async with open_session(self._session_factory, f"Loading roles for user {user_id}") as db:
            result = await db.execute(select(user_roles.c.role_key).where(user_roles.c.user_id == user_id))
            keys = result.scalars().all()
        return sorted((RoleKey.parse(key) for key in keys), key=lambda r: r.value)

    async def get_effective_role(self, user_id: str) -> Optional[RoleKey]:
        return effective_role(await self.get_role_keys(user_id))

    async def is_active(self, user_id: str) -> Optional[bool]:
        """Whether the user may sign in; None if there is no such user."""
        async with open_session(self._session_factory, f"Loading user {user_id}") as db:
            result = await db.execute(select(User.is_active).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def assign_role(self, user_id: str, role: RoleKey, actor_id: Optional[str] = None) -> bool:
        """Give ``role`` to the user. Returns False if they already had it."""
        async with open_session(self._session_factory, f"Assigning {role.value} to user {user_id}") as db:
            async with db.begin():
                await self._require_user(db, user_id)
                result = await db.execute(
                    select(user_roles).where(user_roles.c.user_id == user_id, user_roles.c.role_key == role.value)
                )
                if result.first():
                    return False
                await db.execute(
                    insert(user_roles).values(user_id=user_id, role_key=role.value, assigned_by_id=actor_id)
                )

        await self._audit.emit(AuditEvent(
            action="role_assigned",
            actor_id=actor_id,
            resource_type="user_roles",
            resource_id=user_id,
            target_user_id=user_id,
            details={"role": role.value},
        ))
        log.info(f"Role {role.value} assigned to user {user_id} by {actor_id}")
        return True

    async def remove_role(self, user_id: str, role: RoleKey, actor_id: Optional[str] = None) -> bool:
        """Take ``role`` away from the user. Returns False if they did not have it."""
        async with open_session(self._session_factory, f"Removing {role.value} from user {user_id}") as db:
            async with db.begin():
                await self._require_user(db, user_id)
                result = await db.execute(
                    delete(user_roles).where(user_roles.c.user_id == user_id, user_roles.c.role_key == role.value)
                )
                if not result.rowcount:
                    return False

        await self._audit.emit(AuditEvent(
            action="role_removed",
            actor_id=actor_id,
            resource_type="user_roles",
            resource_id=user_id,
            target_user_id=user_id,
            details={"role": role.value},
        ))
        log.info(f"Role {role.value} removed from user {user_id} by {actor_id}")
        return True

    @staticmethod
    async def _require_user(db: AsyncSession, user_id: str) -> None:
        result = await db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise UserNotFound(user_id)
