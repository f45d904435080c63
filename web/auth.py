"""Authentication dependencies for the web API: bearer token, identity provider, aal2 gate."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hub.errors import InvalidCredentials
from hub.services.identity import AuthUser, IdentityProvider, build_identity_provider
from hub.services.stepup import assert_step_up

http_bearer = HTTPBearer(auto_error=False)


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    """Process-wide identity provider (overridable in tests via app.dependency_overrides)."""
    return build_identity_provider()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_access_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    x_auth_token: Optional[str] = Header(None, alias="X-Auth-Token"),
) -> Optional[str]:
    """Accepts Authorization: Bearer or X-Auth-Token (fallback for proxies that strip Authorization)."""
    if credentials and credentials.credentials:
        return credentials.credentials
    return x_auth_token or None


async def require_token(token: Optional[str] = Depends(get_access_token)) -> str:
    """Require a token of any assurance level (used by the sign-in steps)."""
    if not token:
        raise _unauthorized("Missing token")
    return token


async def get_current_user(
    token: Optional[str] = Depends(get_access_token),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Optional[AuthUser]:
    """Return the session's user at any assurance level, or None."""
    if not token:
        return None
    try:
        return await provider.get_user(token)
    except InvalidCredentials:
        return None


async def require_admin_session(
    token: Optional[str] = Depends(get_access_token),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> AuthUser:
    """Require password + verified second factor (aal2). A password-only session counts as no session."""
    try:
        return await assert_step_up(provider, token)
    except InvalidCredentials as e:
        raise _unauthorized(e.message)
