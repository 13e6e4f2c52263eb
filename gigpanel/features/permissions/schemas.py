"""
Pydantic schemas for the permission API.

Keys, roles and modes sent by clients are checked here, so a typo in a request
is a 400 and not a server error.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from gigpanel.features.permissions.catalog import default_catalog
from gigpanel.features.permissions.exceptions import CatalogError
from gigpanel.features.permissions.roles import Mode, RoleKey


def _permission_key(value: str) -> str:
    try:
        return default_catalog.get_permission(value).key
    except CatalogError as e:
        raise ValueError(e.message)


def _mode(value: Optional[str]) -> str:
    try:
        return Mode.parse(value).value
    except CatalogError as e:
        raise ValueError(e.message)


def _role(value: str) -> str:
    try:
        return RoleKey.parse(value).value
    except CatalogError as e:
        raise ValueError(e.message)


# ============================================================================
# Catalog Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    key: str
    label: str
    group: str
    feature_flags: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class CatalogResponse(BaseModel):
    """Catalog entries by group, in catalog order."""
    groups: Dict[str, List[PermissionResponse]]
    total: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleResponse(BaseModel):
    key: str
    label: str
    admin_panel: bool


class GrantResponse(BaseModel):
    permission_key: str
    mode: str
    allow: bool


class RoleGrantsResponse(BaseModel):
    """
    ``permissions`` is what the engine sees for ``mode`` (mode rows over
    ``all`` rows); ``grants`` are the stored rows.
    """
    role: str
    mode: str
    permissions: Dict[str, bool]
    grants: List[GrantResponse]
    snapshot_age: Optional[float] = None


class RolePermissionUpdate(BaseModel):
    permission_key: str = Field(..., description="Catalog key, e.g. 'transactions.approve'")
    mode: str = Field("all", description="all, task_doer or task_giver")
    allow: bool

    @field_validator("permission_key")
    @classmethod
    def known_permission(cls, v: str) -> str:
        return _permission_key(v)

    @field_validator("mode")
    @classmethod
    def known_mode(cls, v: str) -> str:
        return _mode(v)


class RolePermissionUpdateResponse(BaseModel):
    role: str
    permission_key: str
    mode: str
    allow: bool
    previous: Optional[bool] = None


class RoleAssignment(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def known_role(cls, v: str) -> str:
        return _role(v)


class UserRolesResponse(BaseModel):
    user_id: str
    roles: List[str]
    effective_role: Optional[str] = None


# ============================================================================
# Restriction Schemas
# ============================================================================

class RestrictionsUpdate(BaseModel):
    """Full replacement of a user's restriction set."""
    permission_keys: List[str] = Field(default_factory=list)

    @field_validator("permission_keys")
    @classmethod
    def known_permissions(cls, v: List[str]) -> List[str]:
        return [_permission_key(key) for key in v]


class BulkRestrictionsUpdate(RestrictionsUpdate):
    user_ids: List[str] = Field(..., min_length=1)


class RestrictionsResponse(BaseModel):
    user_id: str
    permission_keys: List[str]


class BulkRestrictionsResponse(BaseModel):
    updated: List[RestrictionsResponse]


# ============================================================================
# Resolution Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    permission_key: str

    @field_validator("permission_key")
    @classmethod
    def known_permission(cls, v: str) -> str:
        return _permission_key(v)


class CheckManyRequest(BaseModel):
    permission_keys: List[str] = Field(..., min_length=1)

    @field_validator("permission_keys")
    @classmethod
    def known_permissions(cls, v: List[str]) -> List[str]:
        return [_permission_key(key) for key in v]


class DecisionResponse(BaseModel):
    permission: str
    allow: bool
    reason: str

    model_config = ConfigDict(from_attributes=True)


class CheckManyResponse(BaseModel):
    decisions: Dict[str, DecisionResponse]


class EffectivePermissionsResponse(BaseModel):
    """What the UI may show for the calling actor. Routes still check."""
    user_id: str
    role: str
    mode: str
    permissions: Dict[str, bool]
