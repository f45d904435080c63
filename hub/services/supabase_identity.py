"""Identity provider backed by the hosted platform's auth REST API (GoTrue)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

import httpx
import jwt

from hub.errors import InvalidCredentials, NotFound, ProviderError, ValidationError
from hub.services.identity import (
    AAL1,
    AuthSession,
    AuthUser,
    Enrollment,
    Factor,
    IdentityProvider,
)

logger = logging.getLogger("hub.identity")

ADMIN_PAGE_SIZE = 200

# GoTrue error codes that mean "this one-time code did not work"
_MFA_REJECTED = {"mfa_verification_failed", "mfa_challenge_expired", "mfa_verification_rejected"}


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _to_factor(raw: dict) -> Factor:
    return Factor(
        id=raw["id"],
        status=raw.get("status", ""),
        factor_type=raw.get("factor_type", "totp"),
        friendly_name=raw.get("friendly_name"),
        created_at=_parse_ts(raw.get("created_at")),
    )


def _to_user(raw: dict) -> AuthUser:
    return AuthUser(
        id=raw["id"],
        email=raw.get("email"),
        created_at=_parse_ts(raw.get("created_at")),
        last_sign_in_at=_parse_ts(raw.get("last_sign_in_at")),
        factors=[_to_factor(f) for f in raw.get("factors") or []],
    )


def _token_claims(access_token: str) -> dict:
    """Read claims of a token the auth server already accepted."""
    try:
        return jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        raise InvalidCredentials("Invalid or expired session")


class SupabaseIdentityProvider(IdentityProvider):
    """Async client for ``{url}/auth/v1``.

    User calls send the anon key plus the user's bearer token; admin calls
    use the service-role key and must never be exposed to the browser.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._anon_key = anon_key
        self._service_key = service_key
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/auth/v1",
            timeout=10.0,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        admin: bool = False,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        key = self._service_key if admin else self._anon_key
        headers = {"apikey": key, "Authorization": f"Bearer {token or key}"}
        try:
            r = await self._client.request(method, path, headers=headers, json=json, params=params)
        except httpx.HTTPError as e:
            logger.warning("Auth API %s %s unreachable: %s", method, path, e)
            raise ProviderError(f"{method} {path}: {e}") from e
        if r.status_code >= 400:
            raise self._error(r, admin)
        if not r.content:
            return {}
        return r.json()

    def _error(self, r: httpx.Response, admin: bool) -> Exception:
        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        msg = (
            body.get("msg")
            or body.get("error_description")
            or body.get("message")
            or body.get("error")
            or r.text
            or f"HTTP {r.status_code}"
        )
        code = body.get("error_code") or body.get("error")
        logger.warning("Auth API %s %s -> %d: %s", r.request.method, r.request.url.path, r.status_code, msg)
        if msg == "Invalid login credentials" or code == "invalid_credentials":
            return InvalidCredentials("Invalid email or password")
        if code in _MFA_REJECTED or "Invalid TOTP" in msg:
            return InvalidCredentials("Invalid code")
        if r.status_code in (401, 403) and not admin:
            return InvalidCredentials("Invalid or expired session")
        if admin and r.status_code == 404:
            return NotFound(msg)
        if admin and r.status_code in (400, 409, 422):
            return ValidationError(msg)
        return ProviderError(f"HTTP {r.status_code}: {msg}")

    def _session(self, data: dict) -> AuthSession:
        token = data["access_token"]
        user = data.get("user") or {}
        claims = _token_claims(token)
        return AuthSession(
            access_token=token,
            user_id=user.get("id") or claims.get("sub"),
            email=user.get("email") or claims.get("email"),
            aal=claims.get("aal", AAL1),
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = await self._request(
            "POST", "/token", params={"grant_type": "password"}, json={"email": email, "password": password}
        )
        return self._session(data)

    async def get_user(self, access_token: str) -> AuthUser:
        return _to_user(await self._request("GET", "/user", token=access_token))

    async def get_assurance_level(self, access_token: str) -> str:
        return _token_claims(access_token).get("aal", AAL1)

    async def list_factors(self, access_token: str) -> List[Factor]:
        user = await self.get_user(access_token)
        return [f for f in user.factors if f.factor_type == "totp"]

    async def enroll_totp(self, access_token: str, friendly_name: str) -> Enrollment:
        # Unverified factors can be unenrolled at aal1; a leftover one would clash on friendly_name
        for factor in await self.list_factors(access_token):
            if factor.status != "verified":
                await self._request("DELETE", f"/factors/{factor.id}", token=access_token)
                logger.info("Removed stale unverified factor %s", factor.id)
        data = await self._request(
            "POST",
            "/factors",
            token=access_token,
            json={"factor_type": "totp", "friendly_name": friendly_name},
        )
        totp = data.get("totp") or {}
        return Enrollment(
            factor_id=data["id"],
            secret=totp.get("secret", ""),
            uri=totp.get("uri", ""),
            qr_code=totp.get("qr_code", ""),
        )

    async def challenge(self, access_token: str, factor_id: str) -> str:
        data = await self._request("POST", f"/factors/{factor_id}/challenge", token=access_token)
        return data["id"]

    async def verify(self, access_token: str, factor_id: str, challenge_id: str, code: str) -> AuthSession:
        data = await self._request(
            "POST",
            f"/factors/{factor_id}/verify",
            token=access_token,
            json={"challenge_id": challenge_id, "code": code},
        )
        return self._session(data)

    async def sign_out(self, access_token: str) -> None:
        await self._request("POST", "/logout", token=access_token)

    async def list_users(self) -> List[AuthUser]:
        users: List[AuthUser] = []
        page = 1
        while True:
            data = await self._request(
                "GET", "/admin/users", admin=True, params={"page": page, "per_page": ADMIN_PAGE_SIZE}
            )
            batch = data.get("users") or []
            users.extend(_to_user(u) for u in batch)
            if len(batch) < ADMIN_PAGE_SIZE:
                return users
            page += 1

    async def create_user(self, email: str, password: str) -> AuthUser:
        data = await self._request(
            "POST",
            "/admin/users",
            admin=True,
            json={"email": email, "password": password, "email_confirm": True},
        )
        return _to_user(data.get("user", data))

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"/admin/users/{user_id}", admin=True)

    async def update_user_password(self, user_id: str, password: str) -> None:
        await self._request("PUT", f"/admin/users/{user_id}", admin=True, json={"password": password})

    async def get_user_by_id(self, user_id: str) -> AuthUser:
        data = await self._request("GET", f"/admin/users/{user_id}", admin=True)
        return _to_user(data.get("user", data))

    async def delete_factor(self, user_id: str, factor_id: str) -> None:
        await self._request("DELETE", f"/admin/users/{user_id}/factors/{factor_id}", admin=True)
