"""Identity provider interface: password sign-in, TOTP factors, admin user management.

Two implementations exist: ``SupabaseIdentityProvider`` talks to the hosted
auth REST API, ``LocalIdentityProvider`` keeps accounts in our own database.
``build_identity_provider`` picks one from ``config.IDENTITY_BACKEND``.
"""
from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import qrcode
from qrcode.image.svg import SvgPathImage

import config

AAL1 = "aal1"  # password only
AAL2 = "aal2"  # password + verified second factor

FACTOR_VERIFIED = "verified"
FACTOR_UNVERIFIED = "unverified"


@dataclass
class Factor:
    id: str
    status: str
    factor_type: str = "totp"
    friendly_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def verified(self) -> bool:
        return self.status == FACTOR_VERIFIED


@dataclass
class AuthUser:
    id: str
    email: Optional[str]
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    factors: List[Factor] = field(default_factory=list)

    @property
    def verified_factors(self) -> List[Factor]:
        return [f for f in self.factors if f.verified and f.factor_type == "totp"]

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.verified_factors)


@dataclass
class AuthSession:
    access_token: str
    user_id: str
    email: Optional[str]
    aal: str = AAL1


@dataclass
class Enrollment:
    """A new, not yet verified TOTP factor. Show qr_code and secret to the user."""

    factor_id: str
    secret: str
    uri: str
    qr_code: str  # data: URI of an SVG image


def qr_data_uri(uri: str) -> str:
    """Render an otpauth:// URI as a scannable SVG QR code data URI."""
    img = qrcode.make(uri, image_factory=SvgPathImage)
    return "data:image/svg+xml;base64," + base64.b64encode(img.to_string()).decode("ascii")


class IdentityProvider(ABC):
    """External identity / MFA collaborator.

    User-facing methods take the caller's access token. Admin methods act
    with the provider's own privileges and must only be reached from routes
    that already required an aal2 session.
    """

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        """Raises InvalidCredentials for a bad email/password."""

    @abstractmethod
    async def get_user(self, access_token: str) -> AuthUser:
        """Raises InvalidCredentials if the token is not a live session."""

    @abstractmethod
    async def get_assurance_level(self, access_token: str) -> str:
        ...

    @abstractmethod
    async def list_factors(self, access_token: str) -> List[Factor]:
        """All factors of the session's user, verified or not, in provider order."""

    @abstractmethod
    async def enroll_totp(self, access_token: str, friendly_name: str) -> Enrollment:
        ...

    @abstractmethod
    async def challenge(self, access_token: str, factor_id: str) -> str:
        """Return a fresh single-use challenge id for the factor."""

    @abstractmethod
    async def verify(self, access_token: str, factor_id: str, challenge_id: str, code: str) -> AuthSession:
        """Return an aal2 session. Raises InvalidCredentials for a wrong or stale code."""

    @abstractmethod
    async def sign_out(self, access_token: str) -> None:
        ...

    @abstractmethod
    async def list_users(self) -> List[AuthUser]:
        ...

    @abstractmethod
    async def create_user(self, email: str, password: str) -> AuthUser:
        ...

    @abstractmethod
    async def delete_user(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def update_user_password(self, user_id: str, password: str) -> None:
        ...

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> AuthUser:
        ...

    @abstractmethod
    async def delete_factor(self, user_id: str, factor_id: str) -> None:
        ...

    async def close(self) -> None:
        pass


def build_identity_provider() -> IdentityProvider:
    """Create the provider selected by IDENTITY_BACKEND."""
    if config.IDENTITY_BACKEND == "supabase":
        from hub.services.supabase_identity import SupabaseIdentityProvider

        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("IDENTITY_BACKEND=supabase needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseIdentityProvider(
            config.SUPABASE_URL,
            anon_key=config.SUPABASE_ANON_KEY or config.SUPABASE_SERVICE_ROLE_KEY,
            service_key=config.SUPABASE_SERVICE_ROLE_KEY,
        )
    if config.IDENTITY_BACKEND == "local":
        from hub.services.local_identity import LocalIdentityProvider

        return LocalIdentityProvider()
    raise RuntimeError(f"Unknown IDENTITY_BACKEND: {config.IDENTITY_BACKEND!r}")
