from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, Header

from clubauth.service.auth import AuthContext
from clubauth.service.errors import AuthenticationError, ForbiddenError
from clubauth.service.runtime import get_runtime
from clubauth.storage.models import Role

ACCESS_COOKIE = "auth_access_token"
REFRESH_COOKIE = "auth_refresh_token"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_auth(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    """Resolve the caller from the bearer header, or the access cookie when enabled."""

    runtime = get_runtime()
    token = bearer_token(authorization)
    if token is None and runtime.settings.use_httponly_cookies:
        token = access_cookie
    if token is None:
        raise AuthenticationError("Missing or invalid authorization header")
    return runtime.auth.authenticate(token)


async def require_admin(ctx: AuthContext = Depends(require_auth)) -> AuthContext:
    if not ctx.role.uses_password:
        raise ForbiddenError("Admin access required")
    return ctx


async def require_super_admin(ctx: AuthContext = Depends(require_auth)) -> AuthContext:
    if ctx.role != Role.SUPER_ADMIN:
        raise ForbiddenError("Super admin access required")
    return ctx


async def require_coach(ctx: AuthContext = Depends(require_auth)) -> AuthContext:
    if ctx.role != Role.COACH:
        raise ForbiddenError("Coach access required")
    return ctx


def require_club(ctx: AuthContext, tenant_id: str) -> None:
    """Reject callers whose tenant differs from the one named in the path."""

    if ctx.tenant_id != tenant_id:
        raise ForbiddenError("Access denied to this tenant")


async def require_tenant_admin(tenant_id: str, ctx: AuthContext = Depends(require_admin)) -> AuthContext:
    """Admins manage their own tenant only; super admins manage any."""

    if ctx.role != Role.SUPER_ADMIN:
        require_club(ctx, tenant_id)
    return ctx
