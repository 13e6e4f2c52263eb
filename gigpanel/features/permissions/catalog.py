"""
Permission catalog.

The catalog is the static list of every permission the admin panel knows
about. Keys are ``<group>.<action>`` strings and are the join key for grants,
restrictions and feature flags. Anything referencing a key that is not listed
here is a configuration error.
"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from gigpanel.features.permissions.exceptions import UnknownPermission


KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")

GROUPS = (
    "users",
    "transactions",
    "tasks",
    "orders",
    "system",
    "rbac",
    "analytics",
    "emails",
    "api",
)


class PermissionKey(str):
    """
    A permission key that has been checked against a catalog.

    Only ``PermissionCatalog.key`` creates these, so holding one means the key
    existed when it was built. Guards build theirs at import time, which turns
    a typo into a startup failure.
    """
    __slots__ = ()


# Module-wide kill switches, checked alongside each permission's own flag
ORDERS_MODULE = "features.orders.moduleEnabled"
TASKS_MODULE = "features.tasks.moduleEnabled"
TRANSACTIONS_MODULE = "features.transactions.moduleEnabled"
WITHDRAWALS = "features.transactions.withdrawalsEnabled"


@dataclass(frozen=True)
class Permission:
    key: str
    label: str
    group: str
    # Settings paths that can switch this capability off for everyone
    feature_flags: Tuple[str, ...] = ()

    @property
    def action(self) -> str:
        return self.key.split(".", 1)[1]


# (key, label, group, feature flag paths)
DEFAULT_PERMISSIONS = [
    # User management
    ("users.view", "View Users", "users", ()),
    ("users.create", "Create Users", "users", ()),
    ("users.edit", "Edit Users", "users", ("features.users.editEnabled",)),
    ("users.suspend", "Suspend Users", "users", ()),
    ("users.ban", "Ban Users", "users", ("features.users.banEnabled",)),
    ("users.delete", "Delete Users", "users", ("features.users.deleteEnabled",)),
    ("users.restrict", "Restrict User Permissions", "users", ()),

    # Financial operations
    ("transactions.view", "View Transactions", "transactions", (TRANSACTIONS_MODULE,)),
    ("transactions.create", "Create Transactions", "transactions", (TRANSACTIONS_MODULE,)),
    ("transactions.approve", "Approve Transactions", "transactions",
     (TRANSACTIONS_MODULE, "features.transactions.approveEnabled")),
    ("transactions.reject", "Reject Transactions", "transactions",
     (TRANSACTIONS_MODULE, "features.transactions.rejectEnabled")),
    ("transactions.adjust", "Adjust Balances", "transactions",
     (TRANSACTIONS_MODULE, "features.transactions.adjustmentsEnabled")),
    ("withdrawals.view", "View Withdrawals", "transactions", (TRANSACTIONS_MODULE, WITHDRAWALS)),
    ("withdrawals.approve", "Approve Withdrawals", "transactions", (TRANSACTIONS_MODULE, WITHDRAWALS)),
    ("withdrawals.reject", "Reject Withdrawals", "transactions", (TRANSACTIONS_MODULE, WITHDRAWALS)),

    # Task management
    ("tasks.view", "View Tasks", "tasks", (TASKS_MODULE,)),
    ("tasks.edit", "Edit Tasks", "tasks", (TASKS_MODULE,)),
    ("tasks.review", "Review Tasks", "tasks", (TASKS_MODULE, "features.tasks.reviewEnabled")),
    ("tasks.approve", "Approve Tasks", "tasks", (TASKS_MODULE, "features.tasks.approveEnabled")),
    ("tasks.reject", "Reject Tasks", "tasks", (TASKS_MODULE, "features.tasks.rejectEnabled")),
    ("tasks.delete", "Delete Tasks", "tasks", (TASKS_MODULE,)),

    # Order management
    ("orders.view", "View Orders", "orders", (ORDERS_MODULE,)),
    ("orders.edit", "Edit Orders", "orders", (ORDERS_MODULE, "features.orders.editEnabled")),
    ("orders.cancel", "Cancel Orders", "orders", (ORDERS_MODULE, "features.orders.cancelEnabled")),
    ("orders.refund", "Refund Orders", "orders", (ORDERS_MODULE, "features.orders.refundEnabled")),

    # System management
    ("settings.view", "View Settings", "system", ()),
    ("settings.edit", "Edit Settings", "system", ()),
    ("audit_logs.view", "View Audit Logs", "system", ()),
    ("action_logs.view", "View Action Logs", "system", ()),
    ("platforms.view", "View Platforms", "system", ()),
    ("platforms.edit", "Edit Platforms", "system", ()),
    ("services.view", "View Services", "system", ()),
    ("services.edit", "Edit Services", "system", ()),
    ("devices.view", "View Devices", "system", ()),
    ("devices.ban", "Ban Devices", "system", ()),
    ("social_accounts.view", "View Social Accounts", "system", ()),

    # Roles & permissions
    ("roles.view", "View Roles", "rbac", ()),
    ("roles.manage", "Manage Role Permissions", "rbac", ()),
    ("roles.assign", "Assign Roles to Users", "rbac", ()),
    ("permissions.view", "View Permissions", "rbac", ()),

    # Analytics & dashboard
    ("analytics.view", "View Analytics", "analytics", ()),
    ("dashboard.view", "View Dashboard", "analytics", ()),

    # Email management
    ("emails.view", "View Emails", "emails", ()),
    ("emails.create", "Create Email Templates", "emails", ()),
    ("emails.edit", "Edit Email Templates", "emails", ()),
    ("emails.delete", "Delete Email Templates", "emails", ()),
    ("emails.send", "Send Emails", "emails", ()),
    ("emails.send_bulk", "Send Bulk Emails", "emails", ()),

    # API management
    ("api.view", "View API Keys", "api", ()),
    ("api.edit", "Edit API Keys", "api", ()),
    ("api.delete", "Delete API Keys", "api", ()),
]


class PermissionCatalog:
    """
    Ordered, read-only registry of permissions.

    Usage:
        catalog = PermissionCatalog.default()
        catalog.get_permission("transactions.approve").feature_flags
        # ('features.transactions.moduleEnabled', 'features.transactions.approveEnabled')
    """

    def __init__(self, permissions: Iterable[Permission]):
        self._permissions: Dict[str, Permission] = {}
        for permission in permissions:
            if not KEY_PATTERN.match(permission.key):
                raise ValueError(f"Malformed permission key: {permission.key!r}")
            if permission.group not in GROUPS:
                raise ValueError(f"Unknown permission group {permission.group!r} for {permission.key!r}")
            if permission.key in self._permissions:
                raise ValueError(f"Duplicate permission key: {permission.key!r}")
            self._permissions[permission.key] = permission

    @classmethod
    def default(cls) -> "PermissionCatalog":
        return cls(
            Permission(key=key, label=label, group=group, feature_flags=tuple(flags))
            for key, label, group, flags in DEFAULT_PERMISSIONS
        )

    def list_permissions(self) -> List[Permission]:
        return list(self._permissions.values())

    def get_permission(self, key: str) -> Permission:
        try:
            return self._permissions[key]
        except (KeyError, TypeError):
            raise UnknownPermission(str(key)) from None

    def key(self, key: str) -> PermissionKey:
        """Validate ``key`` and return it as a PermissionKey."""
        return PermissionKey(self.get_permission(key).key)

    def require_all(self, keys: Iterable[str]) -> List[Permission]:
        """
        Look up every key, in order, without duplicates.

        Raises UnknownPermission for the first unknown key.
        """
        seen = set()
        result = []
        for key in keys:
            if key in seen:
                continue
            seen.add(key)
            result.append(self.get_permission(key))
        return result

    def grouped(self) -> Dict[str, List[Permission]]:
        groups: Dict[str, List[Permission]] = {group: [] for group in GROUPS}
        for permission in self._permissions.values():
            groups[permission.group].append(permission)
        return {group: items for group, items in groups.items() if items}

    def feature_flags(self, permissions: Sequence[Permission]) -> List[str]:
        return sorted({path for p in permissions for path in p.feature_flags})

    def __contains__(self, key: object) -> bool:
        return key in self._permissions

    def __iter__(self) -> Iterator[Permission]:
        return iter(self._permissions.values())

    def __len__(self) -> int:
        return len(self._permissions)


default_catalog = PermissionCatalog.default()
