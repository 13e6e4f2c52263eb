"""
Permission management API routes.

Catalog and role inspection, grant edits, user restrictions, role assignment,
and permission checks for the calling actor.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status

from gigpanel.features.permissions.dependencies import get_permission_services, require_permission
from gigpanel.features.permissions.engine import Decision
from gigpanel.features.permissions.exceptions import UnknownMode
from gigpanel.features.permissions.roles import ADMIN_PANEL_ROLES, Mode, RoleKey, effective_role
from gigpanel.features.permissions.schemas import (
    PermissionResponse,
    CatalogResponse,
    RoleResponse,
    GrantResponse,
    RoleGrantsResponse,
    RolePermissionUpdate,
    RolePermissionUpdateResponse,
    RoleAssignment,
    UserRolesResponse,
    RestrictionsUpdate,
    BulkRestrictionsUpdate,
    RestrictionsResponse,
    BulkRestrictionsResponse,
    PermissionCheckRequest,
    CheckManyRequest,
    DecisionResponse,
    CheckManyResponse,
    EffectivePermissionsResponse,
)
from gigpanel.features.permissions.service import PermissionServices
from gigpanel.features.users.dependencies import ActorContext, get_current_actor
from gigpanel.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _decision_response(decision: Decision) -> DecisionResponse:
    return DecisionResponse(permission=decision.permission, allow=decision.allow, reason=decision.reason.value)


def _role_or_404(role: str) -> RoleKey:
    try:
        return RoleKey(role)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")


# ============================================================================
# Catalog Routes
# ============================================================================

@router.get("/catalog", response_model=CatalogResponse)
async def list_catalog(
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("permissions.view")),
):
    """List every permission, grouped."""
    groups = {
        group: [PermissionResponse.model_validate(p) for p in permissions]
        for group, permissions in services.catalog.grouped().items()
    }
    return CatalogResponse(groups=groups, total=len(services.catalog))


@router.get("/catalog/{permission_key}", response_model=PermissionResponse)
async def get_catalog_entry(
    permission_key: str,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("permissions.view")),
):
    if permission_key not in services.catalog:
        raise HTTPException(status_code=404, detail="Permission not found")
    return PermissionResponse.model_validate(services.catalog.get_permission(permission_key))


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(actor: ActorContext = Depends(require_permission("roles.view"))):
    return [RoleResponse(key=role.value, label=role.label, admin_panel=role in ADMIN_PANEL_ROLES) for role in RoleKey]


@router.get("/roles/{role}/grants", response_model=RoleGrantsResponse)
async def get_role_grants(
    role: str,
    mode: Optional[str] = None,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.view")),
):
    """The role's permission map as the engine sees it, plus the stored rows."""
    role_key = _role_or_404(role)
    try:
        mode = Mode.parse(mode)
    except UnknownMode as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    permissions = await services.cache.get_role_permission_map(role_key, mode)
    grants = await services.admin.get_role_grants(role_key)
    return RoleGrantsResponse(
        role=role_key.value,
        mode=mode.value,
        permissions=dict(permissions),
        grants=[GrantResponse(permission_key=g.permission_key, mode=g.mode.value, allow=g.allow) for g in grants],
        snapshot_age=services.cache.snapshot_age(role_key),
    )


@router.put("/roles/{role}/grants", response_model=RolePermissionUpdateResponse)
async def update_role_grant(
    role: str,
    update: RolePermissionUpdate,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.manage")),
):
    """Create or change one grant. Takes effect on the next check for the role."""
    role_key = _role_or_404(role)
    previous = await services.admin.set_role_permission(
        actor.user_id, role_key, update.permission_key, update.mode, update.allow
    )
    return RolePermissionUpdateResponse(
        role=role_key.value,
        permission_key=update.permission_key,
        mode=update.mode,
        allow=update.allow,
        previous=previous,
    )


@router.post("/cache/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_cache(
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.manage")),
):
    services.cache.invalidate()
    log.info(f"Permission cache invalidated by {actor.user_id}")
    return None


# ============================================================================
# User Restriction Routes
# ============================================================================

@router.get("/users/{user_id}/restrictions", response_model=RestrictionsResponse)
async def get_user_restrictions(
    user_id: str,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("users.view")),
):
    restrictions = await services.admin.get_user_restrictions(user_id)
    return RestrictionsResponse(user_id=user_id, permission_keys=sorted(restrictions))


@router.put("/users/{user_id}/restrictions", response_model=RestrictionsResponse)
async def set_user_restrictions(
    user_id: str,
    update: RestrictionsUpdate,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("users.restrict")),
):
    """Replace the user's restrictions. Applies from the user's next request."""
    restrictions = await services.admin.set_user_restrictions(actor.user_id, user_id, update.permission_keys)
    return RestrictionsResponse(user_id=user_id, permission_keys=sorted(restrictions))


@router.post("/users/bulk-restrictions", response_model=BulkRestrictionsResponse)
async def bulk_set_user_restrictions(
    update: BulkRestrictionsUpdate,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("users.restrict")),
):
    """Give several users the same restriction set. All users must exist."""
    before = await services.admin.bulk_set_user_restrictions(actor.user_id, update.user_ids, update.permission_keys)
    after = sorted(set(update.permission_keys))
    return BulkRestrictionsResponse(
        updated=[RestrictionsResponse(user_id=user_id, permission_keys=after) for user_id in before]
    )


# ============================================================================
# Role Assignment Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=UserRolesResponse)
async def get_user_roles(
    user_id: str,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.view")),
):
    roles = await services.admin.get_user_roles(user_id)
    strongest = effective_role(roles)
    return UserRolesResponse(
        user_id=user_id,
        roles=[role.value for role in roles],
        effective_role=strongest.value if strongest else None,
    )


@router.post("/users/{user_id}/roles", response_model=UserRolesResponse)
async def assign_role(
    user_id: str,
    assignment: RoleAssignment,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.assign")),
):
    await services.admin.assign_role(actor.user_id, user_id, assignment.role)
    return await get_user_roles(user_id, services, actor)


@router.delete("/users/{user_id}/roles/{role}", response_model=UserRolesResponse)
async def remove_role(
    user_id: str,
    role: str,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(require_permission("roles.assign")),
):
    role_key = _role_or_404(role)
    if not await services.admin.remove_role(actor.user_id, user_id, role_key):
        raise HTTPException(status_code=404, detail="User does not have this role")
    return await get_user_roles(user_id, services, actor)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=DecisionResponse)
async def check_permission(
    check: PermissionCheckRequest,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(get_current_actor),
):
    """Resolve one permission for the calling actor."""
    decision = await services.engine.resolve(actor.role, check.permission_key, actor.mode, actor.user_id)
    return _decision_response(decision)


@router.post("/check-many", response_model=CheckManyResponse)
async def check_permissions(
    check: CheckManyRequest,
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(get_current_actor),
):
    decisions = await services.engine.resolve_many(actor.role, check.permission_keys, actor.mode, actor.user_id)
    return CheckManyResponse(decisions={key: _decision_response(d) for key, d in decisions.items()})


@router.get("/me", response_model=EffectivePermissionsResponse)
async def get_my_permissions(
    services: PermissionServices = Depends(get_permission_services),
    actor: ActorContext = Depends(get_current_actor),
):
    """Effective permissions of the calling actor, for hiding UI controls."""
    permissions = await services.engine.effective_permissions(actor.role, actor.mode, actor.user_id)
    return EffectivePermissionsResponse(
        user_id=actor.user_id,
        role=actor.role.value,
        mode=actor.mode.value,
        permissions=permissions,
    )
