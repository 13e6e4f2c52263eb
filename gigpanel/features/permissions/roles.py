"""
Roles and operating modes.

The role set is closed. A user may hold several role assignments; the engine
works with one effective role, the strongest in ``ROLE_PRECEDENCE``.
"""
from enum import Enum
from typing import Iterable, Optional

from gigpanel.features.permissions.exceptions import UnknownMode, UnknownRole


class RoleKey(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    TASK_GIVER = "task_giver"
    TASK_DOER = "task_doer"

    @classmethod
    def parse(cls, value: "str | RoleKey") -> "RoleKey":
        """Return the RoleKey for ``value`` or raise UnknownRole."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownRole(str(value)) from None

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]


class Mode(str, Enum):
    """Marketplace persona a grant can be scoped to."""
    ALL = "all"
    TASK_DOER = "task_doer"
    TASK_GIVER = "task_giver"

    @classmethod
    def parse(cls, value: "str | Mode | None") -> "Mode":
        if value is None:
            return cls.ALL
        if isinstance(value, cls):
            return value
        value = _MODE_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise UnknownMode(str(value)) from None


# camelCase spellings used by older clients and settings rows
_MODE_ALIASES = {
    "taskDoer": "task_doer",
    "taskGiver": "task_giver",
}


ROLE_LABELS = {
    RoleKey.SUPER_ADMIN: "Super Admin",
    RoleKey.ADMIN: "Admin",
    RoleKey.MODERATOR: "Moderator",
    RoleKey.TASK_GIVER: "Task Giver",
    RoleKey.TASK_DOER: "Task Doer",
}

# Strongest first
ROLE_PRECEDENCE = (
    RoleKey.SUPER_ADMIN,
    RoleKey.ADMIN,
    RoleKey.MODERATOR,
    RoleKey.TASK_GIVER,
    RoleKey.TASK_DOER,
)

ADMIN_PANEL_ROLES = frozenset({RoleKey.SUPER_ADMIN, RoleKey.ADMIN, RoleKey.MODERATOR})


def effective_role(roles: Iterable["str | RoleKey"]) -> Optional[RoleKey]:
    """
    Pick the strongest of a user's role assignments.

    Returns None when the user has no assignment. Unknown role keys raise
    UnknownRole rather than being skipped.
    """
    held = {RoleKey.parse(role) for role in roles}
    for role in ROLE_PRECEDENCE:
        if role in held:
            return role
    return None


# Grants seeded for a fresh install. super_admin is listed for completeness;
# the engine never consults its rows.
ADMIN_GRANTS = [
    "users.view", "users.create", "users.edit", "users.suspend", "users.ban", "users.restrict",
    "transactions.view", "transactions.create", "transactions.approve", "transactions.reject",
    "transactions.adjust",
    "withdrawals.view", "withdrawals.approve", "withdrawals.reject",
    "tasks.view", "tasks.edit", "tasks.review", "tasks.approve", "tasks.reject", "tasks.delete",
    "orders.view", "orders.edit", "orders.cancel", "orders.refund",
    "settings.view", "settings.edit", "audit_logs.view", "action_logs.view",
    "platforms.view", "platforms.edit", "services.view", "services.edit",
    "devices.view", "devices.ban", "social_accounts.view",
    "roles.view", "permissions.view",
    "analytics.view", "dashboard.view",
    "emails.view", "emails.create", "emails.edit", "emails.send", "emails.send_bulk",
]

MODERATOR_GRANTS = [
    "users.view", "users.suspend",
    "transactions.view", "withdrawals.view",
    "tasks.view", "tasks.review", "tasks.approve", "tasks.reject",
    "orders.view", "orders.cancel",
    "settings.view", "audit_logs.view", "action_logs.view",
    "platforms.view", "services.view", "devices.view", "social_accounts.view",
    "dashboard.view",
    "emails.view", "emails.send",
]

# role -> mode -> permission keys allowed in that mode
DEFAULT_ROLE_GRANTS = {
    RoleKey.SUPER_ADMIN: {Mode.ALL: "*"},
    RoleKey.ADMIN: {Mode.ALL: ADMIN_GRANTS},
    RoleKey.MODERATOR: {Mode.ALL: MODERATOR_GRANTS},
    RoleKey.TASK_GIVER: {Mode.TASK_GIVER: ["orders.view", "orders.cancel"]},
    RoleKey.TASK_DOER: {Mode.TASK_DOER: ["tasks.view"]},
}
