"""
Errors raised by the permission core.

Integrity errors (unknown permission, role or mode) mean the caller or the
stored data is misconfigured. They are never turned into a deny.
"""


class RBACError(Exception):
    """Base exception for the permission core."""

    def __init__(self, message: str = "Permission core error"):
        self.message = message
        super().__init__(self.message)


class CatalogError(RBACError):
    """A key or role does not exist in the catalog."""
    pass


class UnknownPermission(CatalogError):
    """Raised when a permission key is not in the catalog."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Unknown permission: {key!r}")


class UnknownRole(CatalogError):
    """Raised when a role key is not one of the known roles."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Unknown role: {role!r}")


class UnknownMode(CatalogError):
    """Raised when a mode is not all, task_doer or task_giver."""

    def __init__(self, mode: str):
        self.mode = mode
        super().__init__(f"Unknown mode: {mode!r}")


class StoreUnavailable(RBACError):
    """Raised when the grant, restriction or settings store cannot be read."""
    pass


class ResolutionTimeout(RBACError):
    """Raised when resolution did not finish within the caller's timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Permission resolution timed out after {timeout:.3f}s")


class UserNotFound(RBACError):
    """Raised when an admin operation targets a user that does not exist."""

    def __init__(self, user_ids):
        if isinstance(user_ids, str):
            user_ids = [user_ids]
        self.user_ids = list(user_ids)
        super().__init__(f"User not found: {', '.join(self.user_ids)}")
