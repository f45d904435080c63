"""Admin user management: list, create, reset password, delete, reset MFA."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from hub.services.identity import AuthUser, IdentityProvider
from web.auth import get_identity_provider, require_admin_session

logger = logging.getLogger("hub.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


class CreateUserRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ResetPasswordRequest(BaseModel):
    password: Optional[str] = None


class AdminUserResponse(BaseModel):
    id: str
    email: Optional[str]
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    mfa_enabled: bool = False


def _user_response(u: AuthUser) -> AdminUserResponse:
    return AdminUserResponse(
        id=u.id,
        email=u.email,
        created_at=u.created_at,
        last_sign_in_at=u.last_sign_in_at,
        mfa_enabled=u.mfa_enabled,
    )


@router.get("/users")
async def list_users(
    admin: AuthUser = Depends(require_admin_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """All admin accounts with their MFA status."""
    users = await provider.list_users()
    return {"users": [_user_response(u) for u in users]}


@router.post("/users")
async def create_user(
    body: CreateUserRequest,
    admin: AuthUser = Depends(require_admin_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Create an admin account with a confirmed email. The new user enrolls TOTP at first sign-in."""
    email = (body.email or "").strip()
    if not email or not body.password:
        raise HTTPException(400, "Email and password are required")
    user = await provider.create_user(email, body.password)
    logger.info("Admin %s created user %s", admin.email, user.email)
    return {"user": {"id": user.id, "email": user.email}}


@router.post("/users/{user_id}/reset-password")
async def reset_password(
    user_id: str,
    body: ResetPasswordRequest,
    admin: AuthUser = Depends(require_admin_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    if not body.password:
        raise HTTPException(400, "Password is required")
    await provider.update_user_password(user_id, body.password)
    logger.info("Admin %s reset the password of %s", admin.email, user_id)
    return {"success": True}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin: AuthUser = Depends(require_admin_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Delete an admin account. Cannot delete self."""
    if user_id == admin.id:
        raise HTTPException(400, "Cannot delete your own account")
    await provider.delete_user(user_id)
    logger.info("Admin %s deleted user %s", admin.email, user_id)
    return {"success": True}


@router.delete("/users/{user_id}/mfa")
async def reset_mfa(
    user_id: str,
    admin: AuthUser = Depends(require_admin_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Remove every factor of the user. They enroll again at next sign-in."""
    user = await provider.get_user_by_id(user_id)
    for factor in user.factors:
        await provider.delete_factor(user_id, factor.id)
    logger.info("Admin %s reset MFA of %s (%d factors)", admin.email, user_id, len(user.factors))
    return {"success": True, "removed": len(user.factors)}
