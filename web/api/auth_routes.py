"""Auth API routes: password login, TOTP enrollment / challenge / verify, current session."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hub.errors import InvalidCredentials
from hub.services.identity import AuthUser, Enrollment, IdentityProvider
from hub.services.stepup import FlowState, StepUpFlow
from web.auth import get_access_token, get_current_user, get_identity_provider, require_admin_session, require_token

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str
    password: str


class EnrollmentResponse(BaseModel):
    factor_id: str
    secret: str
    uri: str
    qr_code: str


class FlowResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    aal: str
    step: str  # factor_enrollment_pending, factor_challenge_issued, authenticated
    factor_id: Optional[str] = None
    challenge_id: Optional[str] = None
    enrollment: Optional[EnrollmentResponse] = None


class ChallengeRequest(BaseModel):
    factor_id: str


class VerifyRequest(BaseModel):
    factor_id: str
    challenge_id: Optional[str] = None
    code: str


class SessionResponse(BaseModel):
    id: str
    email: Optional[str]
    aal: str
    mfa_enabled: bool


def _enrollment(e: Optional[Enrollment]) -> Optional[EnrollmentResponse]:
    if not e:
        return None
    return EnrollmentResponse(factor_id=e.factor_id, secret=e.secret, uri=e.uri, qr_code=e.qr_code)


def _flow_response(flow: StepUpFlow) -> FlowResponse:
    return FlowResponse(
        access_token=flow.session.access_token,
        aal=flow.session.aal,
        step=flow.state.value,
        factor_id=flow.factor_id,
        challenge_id=flow.challenge_id,
        enrollment=_enrollment(flow.enrollment),
    )


@router.post("/login", response_model=FlowResponse)
async def login(body: LoginRequest, provider: IdentityProvider = Depends(get_identity_provider)):
    """Check email/password and start the second-factor step (enroll or challenge)."""
    flow = StepUpFlow(provider)
    await flow.login(body.email.strip(), body.password)
    return _flow_response(flow)


@router.post("/mfa/enroll", response_model=FlowResponse)
async def enroll(token: str = Depends(require_token), provider: IdentityProvider = Depends(get_identity_provider)):
    """Start (or restart) TOTP enrollment for a user without a verified factor."""
    flow = await StepUpFlow.resume(provider, token)
    await flow.enroll()
    return _flow_response(flow)


@router.post("/mfa/challenge", response_model=FlowResponse)
async def challenge(
    body: ChallengeRequest,
    token: str = Depends(require_token),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Open a fresh challenge. Needed before every verify attempt in the login step."""
    flow = await StepUpFlow.resume(provider, token, body.factor_id)
    await flow.issue_challenge(body.factor_id)
    return _flow_response(flow)


@router.post("/mfa/verify", response_model=FlowResponse)
async def verify(
    body: VerifyRequest,
    token: str = Depends(require_token),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Verify a 6-digit code. On success the returned token is aal2.

    A rejected code answers 401 and, in the login step, carries the
    replacement challenge_id to use for the next attempt.
    """
    flow = await StepUpFlow.resume(provider, token, body.factor_id, body.challenge_id)
    try:
        await flow.verify(body.code)
    except InvalidCredentials as e:
        return JSONResponse(
            status_code=401,
            content={"error": e.message, "step": flow.state.value, "challenge_id": flow.challenge_id},
        )
    return _flow_response(flow)


@router.get("/me", response_model=SessionResponse)
async def get_me(
    user: AuthUser = Depends(require_admin_session),
    token: str = Depends(require_token),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Current fully authenticated (aal2) user."""
    return SessionResponse(
        id=user.id,
        email=user.email,
        aal=await provider.get_assurance_level(token),
        mfa_enabled=user.mfa_enabled,
    )


@router.get("/session")
async def get_session(
    user: Optional[AuthUser] = Depends(get_current_user),
    token: Optional[str] = Depends(get_access_token),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Session at any assurance level, or null. Lets the login page resume at the right step."""
    if not user:
        return None
    aal = await provider.get_assurance_level(token)
    step = FlowState.AUTHENTICATED if aal == "aal2" and user.mfa_enabled else FlowState.PASSWORD_VERIFIED
    return {
        "id": user.id,
        "email": user.email,
        "aal": aal,
        "mfa_enabled": user.mfa_enabled,
        "step": step.value,
        "verified_factor_ids": [f.id for f in user.verified_factors],
    }


@router.post("/logout")
async def logout(token: str = Depends(require_token), provider: IdentityProvider = Depends(get_identity_provider)):
    await provider.sign_out(token)
    return {"success": True}
