"""
FastAPI dependencies for authentication.

The bearer token identifies the user (``sub``) and may carry the role and the
persona mode they are acting in. Without a ``role`` claim the role is looked
up in user_roles. Unknown and deactivated users are rejected.
"""
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from gigpanel.features.permissions.exceptions import UnknownMode, UnknownRole
from gigpanel.features.permissions.roles import Mode, RoleKey
from gigpanel.features.users.auth import verify_jwt_token
from gigpanel.utils import get_logger


log = get_logger(__name__)
security = HTTPBearer()


@dataclass(frozen=True)
class ActorContext:
    """Who is calling, with which role, in which mode."""
    user_id: str
    role: RoleKey
    mode: Mode = Mode.ALL


async def get_current_actor(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> ActorContext:
    """
    Get the calling actor from the JWT.

    Usage:
        @router.get("/me")
        async def get_me(actor: ActorContext = Depends(get_current_actor)):
            return actor
    """
    payload = verify_jwt_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user_store = request.app.state.permissions.user_roles
    active = await user_store.is_active(str(user_id))
    if active is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    try:
        mode = Mode.parse(payload.get("mode"))
        role = payload.get("role")
        if role is not None:
            role = RoleKey.parse(role)
        else:
            role = await user_store.get_effective_role(user_id)
    except (UnknownMode, UnknownRole) as e:
        log.info(f"Rejecting token for user {user_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User has no role",
        )

    return ActorContext(user_id=str(user_id), role=role, mode=mode)


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
