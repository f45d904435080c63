"""Local identity provider tables: admin accounts, TOTP factors, challenges."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hub.models.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdminUser(Base):
    """Console account (email + password)."""

    __tablename__ = "admin_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_sign_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    factors = relationship(
        "MfaFactor", back_populates="user", cascade="all, delete-orphan", order_by="MfaFactor.created_at"
    )


class MfaFactor(Base):
    """TOTP second factor. Only verified factors count toward aal2."""

    __tablename__ = "mfa_factors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("admin_users.id", ondelete="CASCADE"), nullable=False, index=True)
    friendly_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    factor_type: Mapped[str] = mapped_column(String(16), nullable=False, default="totp")
    secret: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unverified")  # unverified, verified
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    user = relationship("AdminUser", back_populates="factors")
    challenges = relationship("MfaChallenge", back_populates="factor", cascade="all, delete-orphan")


class MfaChallenge(Base):
    """Single-use challenge handle; any verify attempt consumes it."""

    __tablename__ = "mfa_challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    factor_id: Mapped[str] = mapped_column(ForeignKey("mfa_factors.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    factor = relationship("MfaFactor", back_populates="challenges")
