"""Self-hosted identity provider: bcrypt passwords, JWT sessions, TOTP factors in our database."""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
import pyotp
from passlib.context import CryptContext
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import config
from hub.errors import InvalidCredentials, NotFound, ValidationError
from hub.models import AdminUser, MfaChallenge, MfaFactor
from hub.models.base import async_session_factory
from hub.services.identity import (
    AAL1,
    AAL2,
    FACTOR_UNVERIFIED,
    FACTOR_VERIFIED,
    AuthSession,
    AuthUser,
    Enrollment,
    Factor,
    IdentityProvider,
    qr_data_uri,
)

logger = logging.getLogger("hub.identity")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _prepare_password(password: str) -> str:
    """Bcrypt has a 72-byte limit. Pre-hash longer passwords with SHA256."""
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        return hashlib.sha256(encoded).hexdigest()
    return password


def hash_password(password: str) -> str:
    return pwd_context.hash(_prepare_password(password))


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(_prepare_password(plain), hashed)


def create_access_token(user: AdminUser, aal: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "aal": aal,
        "amr": ["password", "totp"] if aal == AAL2 else ["password"],
        "iat": now,
        "exp": now + timedelta(hours=config.JWT_EXPIRE_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands datetimes back naive
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _to_factor(f: MfaFactor) -> Factor:
    return Factor(
        id=f.id,
        status=f.status,
        factor_type=f.factor_type,
        friendly_name=f.friendly_name,
        created_at=f.created_at,
    )


def _to_user(u: AdminUser) -> AuthUser:
    return AuthUser(
        id=u.id,
        email=u.email,
        created_at=u.created_at,
        last_sign_in_at=u.last_sign_in_at,
        factors=[_to_factor(f) for f in u.factors],
    )


async def _get_user_by_id(session: AsyncSession, user_id: str) -> Optional[AdminUser]:
    result = await session.execute(
        select(AdminUser)
        .where(AdminUser.id == user_id)
        .options(selectinload(AdminUser.factors))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _delete_factors(session: AsyncSession, *criteria) -> int:
    """Bulk delete factors matching criteria together with their challenges."""
    factor_ids = select(MfaFactor.id).where(*criteria)
    await session.execute(
        delete(MfaChallenge)
        .where(MfaChallenge.factor_id.in_(factor_ids))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(delete(MfaFactor).where(*criteria).execution_options(synchronize_session=False))
    return result.rowcount


async def _get_user_by_email(session: AsyncSession, email: str) -> Optional[AdminUser]:
    result = await session.execute(
        select(AdminUser).where(AdminUser.email == email.strip().lower()).options(selectinload(AdminUser.factors))
    )
    return result.scalar_one_or_none()


class LocalIdentityProvider(IdentityProvider):
    """Accounts live in ``admin_users``; sessions are signed JWTs carrying the assurance level."""

    def __init__(self, session_factory=async_session_factory):
        self._session_factory = session_factory

    async def _user_from_token(self, session: AsyncSession, access_token: str) -> AdminUser:
        payload = decode_token(access_token)
        if not payload or not payload.get("sub"):
            raise InvalidCredentials("Invalid or expired session")
        user = await _get_user_by_id(session, payload["sub"])
        if not user:
            raise InvalidCredentials("Invalid or expired session")
        return user

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        email = (email or "").strip().lower()
        async with self._session_factory() as session:
            user = await _get_user_by_email(session, email)
            if not user:
                # Bootstrap: if INITIAL_ADMIN_PASSWORD is set and matches, create the first admin
                if (
                    config.INITIAL_ADMIN_PASSWORD
                    and email == config.INITIAL_ADMIN_EMAIL
                    and password == config.INITIAL_ADMIN_PASSWORD
                ):
                    user = AdminUser(email=email, password_hash=hash_password(password))
                    session.add(user)
                    await session.flush()
                    logger.info("Bootstrapped initial admin %s", email)
                else:
                    raise InvalidCredentials("Invalid email or password")
            elif not verify_password(password, user.password_hash):
                raise InvalidCredentials("Invalid email or password")
            user.last_sign_in_at = datetime.now(timezone.utc)
            await session.commit()
            return AuthSession(access_token=create_access_token(user, AAL1), user_id=user.id, email=user.email, aal=AAL1)

    async def get_user(self, access_token: str) -> AuthUser:
        async with self._session_factory() as session:
            return _to_user(await self._user_from_token(session, access_token))

    async def get_assurance_level(self, access_token: str) -> str:
        payload = decode_token(access_token)
        if not payload:
            raise InvalidCredentials("Invalid or expired session")
        return payload.get("aal", AAL1)

    async def list_factors(self, access_token: str) -> List[Factor]:
        return (await self.get_user(access_token)).factors

    async def enroll_totp(self, access_token: str, friendly_name: str) -> Enrollment:
        async with self._session_factory() as session:
            user = await self._user_from_token(session, access_token)
            # Only one pending enrollment per user
            await _delete_factors(session, MfaFactor.user_id == user.id, MfaFactor.status == FACTOR_UNVERIFIED)
            secret = pyotp.random_base32()
            uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=config.MFA_ISSUER)
            factor = MfaFactor(user_id=user.id, friendly_name=friendly_name, secret=secret, status=FACTOR_UNVERIFIED)
            session.add(factor)
            await session.commit()
            logger.info("TOTP enrollment started for %s (factor %s)", user.email, factor.id)
            return Enrollment(factor_id=factor.id, secret=secret, uri=uri, qr_code=qr_data_uri(uri))

    async def challenge(self, access_token: str, factor_id: str) -> str:
        async with self._session_factory() as session:
            user = await self._user_from_token(session, access_token)
            if not any(f.id == factor_id for f in user.factors):
                raise NotFound("Factor not found")
            challenge = MfaChallenge(factor_id=factor_id)
            session.add(challenge)
            await session.commit()
            return challenge.id

    async def verify(self, access_token: str, factor_id: str, challenge_id: str, code: str) -> AuthSession:
        async with self._session_factory() as session:
            user = await self._user_from_token(session, access_token)
            factor = next((f for f in user.factors if f.id == factor_id), None)
            if not factor:
                raise NotFound("Factor not found")
            challenge = await session.get(MfaChallenge, challenge_id)
            if not challenge or challenge.factor_id != factor_id or challenge.consumed:
                raise InvalidCredentials("Challenge expired or already used")
            challenge.consumed = True
            expired = datetime.now(timezone.utc) - _as_utc(challenge.created_at) > timedelta(
                seconds=config.MFA_CHALLENGE_TTL
            )
            if expired or not pyotp.TOTP(factor.secret).verify(code, valid_window=1):
                await session.commit()
                logger.info("TOTP verification failed for %s (factor %s)", user.email, factor_id)
                raise InvalidCredentials("Challenge expired" if expired else "Invalid code")
            factor.status = FACTOR_VERIFIED
            await session.commit()
            logger.info("TOTP verified for %s (factor %s)", user.email, factor_id)
            return AuthSession(access_token=create_access_token(user, AAL2), user_id=user.id, email=user.email, aal=AAL2)

    async def sign_out(self, access_token: str) -> None:
        # Stateless tokens: nothing to revoke server side, the client drops the token
        if not decode_token(access_token):
            raise InvalidCredentials("Invalid or expired session")

    async def list_users(self) -> List[AuthUser]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdminUser).options(selectinload(AdminUser.factors)).order_by(AdminUser.created_at)
            )
            return [_to_user(u) for u in result.scalars().all()]

    async def create_user(self, email: str, password: str) -> AuthUser:
        email = email.strip().lower()
        async with self._session_factory() as session:
            if await _get_user_by_email(session, email):
                raise ValidationError("A user with this email address has already been registered")
            user = AdminUser(email=email, password_hash=hash_password(password))
            session.add(user)
            await session.commit()
            user = await _get_user_by_id(session, user.id)
            logger.info("Created admin user %s", email)
            return _to_user(user)

    async def delete_user(self, user_id: str) -> None:
        async with self._session_factory() as session:
            user = await _get_user_by_id(session, user_id)
            if not user:
                raise NotFound("User not found")
            await _delete_factors(session, MfaFactor.user_id == user_id)
            await session.execute(delete(AdminUser).where(AdminUser.id == user_id))
            await session.commit()
            logger.info("Deleted admin user %s", user.email)

    async def update_user_password(self, user_id: str, password: str) -> None:
        async with self._session_factory() as session:
            user = await _get_user_by_id(session, user_id)
            if not user:
                raise NotFound("User not found")
            user.password_hash = hash_password(password)
            await session.commit()

    async def get_user_by_id(self, user_id: str) -> AuthUser:
        async with self._session_factory() as session:
            user = await _get_user_by_id(session, user_id)
            if not user:
                raise NotFound("User not found")
            return _to_user(user)

    async def delete_factor(self, user_id: str, factor_id: str) -> None:
        async with self._session_factory() as session:
            if not await _delete_factors(session, MfaFactor.id == factor_id, MfaFactor.user_id == user_id):
                raise NotFound("Factor not found")
            await session.commit()
            logger.info("Removed factor %s from user %s", factor_id, user_id)
