"""
Route guards and exception handlers for the permission core.

Implements:
- require_permission / require_any_permission dependencies
- denial audit events
- mapping of permission core errors to HTTP responses
"""
from typing import Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from gigpanel.features.permissions.audit import AuditEvent
from gigpanel.features.permissions.catalog import default_catalog
from gigpanel.features.permissions.engine import ReasonCode
from gigpanel.features.permissions.exceptions import (
    CatalogError,
    ResolutionTimeout,
    StoreUnavailable,
    UserNotFound,
)
from gigpanel.features.permissions.service import PermissionServices
from gigpanel.features.users.dependencies import ActorContext, get_current_actor
from gigpanel.utils import get_logger


log = get_logger(__name__)

RESOLUTION_TIMEOUT = "RESOLUTION_TIMEOUT"


def get_permission_services(request: Request) -> PermissionServices:
    return request.app.state.permissions


def denial_detail(permission: Optional[str], reason: str) -> dict:
    """
    Body of a 403. Flag-gated denials read differently from role denials so
    the UI can say "temporarily unavailable" instead of "not allowed".
    """
    if reason == ReasonCode.FEATURE_DISABLED.value:
        message = "This action is temporarily unavailable"
    elif reason == RESOLUTION_TIMEOUT:
        message = "Could not verify permission in time"
    else:
        message = "Insufficient permission"
    return {"code": reason, "message": message, "permission": permission}


async def _deny(
    request: Request,
    services: PermissionServices,
    actor: ActorContext,
    permission: str,
    reason: str,
) -> HTTPException:
    await services.audit.emit(AuditEvent(
        action="permission_denied",
        actor_id=actor.user_id,
        resource_type="permission",
        resource_id=permission,
        details={
            "permission": permission,
            "role": actor.role.value,
            "mode": actor.mode.value,
            "reason": reason,
            "method": request.method,
            "path": request.url.path,
        },
    ))
    log.info(f"Denied {permission} to user {actor.user_id} ({actor.role.value}/{actor.mode.value}): {reason}")
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=denial_detail(permission, reason))


def require_permission(permission_key: str):
    """
    FastAPI dependency to require a specific permission.

    The key is checked against the catalog when the guard is built, so a
    misspelled key fails at import time instead of denying everyone.

    Usage:
        @router.post("/transactions/{id}/approve")
        async def approve(actor: ActorContext = Depends(require_permission("transactions.approve"))):
            ...

    Returns:
        Dependency function that returns the calling actor if allowed

    Raises:
        HTTPException: 403 if the permission resolves to deny
    """
    key = default_catalog.key(permission_key)

    async def permission_dependency(
        request: Request,
        actor: ActorContext = Depends(get_current_actor),
    ) -> ActorContext:
        services = get_permission_services(request)
        try:
            decision = await services.engine.resolve(actor.role, key, actor.mode, actor.user_id)
        except ResolutionTimeout:
            raise await _deny(request, services, actor, key, RESOLUTION_TIMEOUT)

        if not decision.allow:
            raise await _deny(request, services, actor, key, decision.reason.value)
        return actor

    return permission_dependency


def require_any_permission(permission_keys: Iterable[str]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.get("/finance")
        async def finance(actor=Depends(require_any_permission(["transactions.view", "withdrawals.view"]))):
            ...
    """
    keys = [default_catalog.key(key) for key in permission_keys]
    if not keys:
        raise ValueError("require_any_permission needs at least one permission")

    async def permission_dependency(
        request: Request,
        actor: ActorContext = Depends(get_current_actor),
    ) -> ActorContext:
        services = get_permission_services(request)
        try:
            decisions = await services.engine.resolve_many(actor.role, keys, actor.mode, actor.user_id)
        except ResolutionTimeout:
            raise await _deny(request, services, actor, keys[0], RESOLUTION_TIMEOUT)

        if any(decision.allow for decision in decisions.values()):
            return actor
        first = decisions[keys[0]]
        raise await _deny(request, services, actor, first.permission, first.reason.value)

    return permission_dependency


# ============================================================================
# Exception handlers
# ============================================================================

def add_rbac_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CatalogError)
    async def catalog_error_handler(_request: Request, exc: CatalogError):
        log.error(f"Permission configuration error: {exc.message}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"code": "RBAC_MISCONFIGURED", "message": exc.message},
        )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(_request: Request, exc: StoreUnavailable):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"code": "STORE_UNAVAILABLE", "message": exc.message},
        )

    @app.exception_handler(UserNotFound)
    async def user_not_found_handler(_request: Request, exc: UserNotFound):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"code": "USER_NOT_FOUND", "message": exc.message, "user_ids": exc.user_ids},
        )

    @app.exception_handler(ResolutionTimeout)
    async def resolution_timeout_handler(request: Request, exc: ResolutionTimeout):
        # Same body as a guard that timed out; the check endpoints resolve outside any guard
        log.warning(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": denial_detail(None, RESOLUTION_TIMEOUT)},
        )
