"""Step-up authentication: password sign-in followed by a mandatory TOTP second factor.

States::

    unauthenticated -> password_verified (aal1)
    password_verified -> factor_enrollment_pending   (no verified factor yet)
    password_verified -> factor_challenge_issued     (returning user)
    factor_enrollment_pending | factor_challenge_issued -> authenticated (aal2)

A session below aal2 is never treated as authenticated.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Dict, List, Optional, Set

import config
from hub.errors import InvalidCredentials, InvalidTransition, NotFound, ProviderError, ValidationError
from hub.services.identity import AAL2, AuthSession, AuthUser, Enrollment, Factor, IdentityProvider

logger = logging.getLogger("hub.auth")

CODE_PATTERN = re.compile(r"\d{6}")


class FlowState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PASSWORD_VERIFIED = "password_verified"
    FACTOR_ENROLLMENT_PENDING = "factor_enrollment_pending"
    FACTOR_CHALLENGE_ISSUED = "factor_challenge_issued"
    AUTHENTICATED = "authenticated"


VALID_TRANSITIONS: Dict[FlowState, Set[FlowState]] = {
    FlowState.UNAUTHENTICATED: {FlowState.PASSWORD_VERIFIED},
    FlowState.PASSWORD_VERIFIED: {
        FlowState.FACTOR_ENROLLMENT_PENDING,
        FlowState.FACTOR_CHALLENGE_ISSUED,
    },
    FlowState.FACTOR_ENROLLMENT_PENDING: {
        FlowState.FACTOR_ENROLLMENT_PENDING,
        FlowState.AUTHENTICATED,
    },
    FlowState.FACTOR_CHALLENGE_ISSUED: {
        FlowState.FACTOR_CHALLENGE_ISSUED,
        FlowState.AUTHENTICATED,
    },
    FlowState.AUTHENTICATED: set(),  # Terminal state
}


async def assert_step_up(provider: IdentityProvider, access_token: Optional[str]) -> AuthUser:
    """Return the user behind a fully authenticated session.

    The token must resolve to a user, carry assurance level aal2, and the
    user must own at least one verified factor. Anything less is treated
    exactly like no session: InvalidCredentials.
    """
    if not access_token:
        raise InvalidCredentials("Not authenticated")
    user = await provider.get_user(access_token)
    if await provider.get_assurance_level(access_token) != AAL2 or not user.verified_factors:
        raise InvalidCredentials("Two-factor authentication required")
    return user


class StepUpFlow:
    """One sign-in attempt. Holds the session, the factor in use and the open challenge."""

    def __init__(self, provider: IdentityProvider):
        self.provider = provider
        self.state = FlowState.UNAUTHENTICATED
        self.session: Optional[AuthSession] = None
        self.factor_id: Optional[str] = None
        self.challenge_id: Optional[str] = None
        self.enrollment: Optional[Enrollment] = None

    @classmethod
    async def resume(
        cls,
        provider: IdentityProvider,
        access_token: str,
        factor_id: Optional[str] = None,
        challenge_id: Optional[str] = None,
    ) -> "StepUpFlow":
        """Rebuild a flow from what an HTTP client sends back: its token and the factor/challenge it holds."""
        user = await provider.get_user(access_token)
        aal = await provider.get_assurance_level(access_token)
        flow = cls(provider)
        flow.session = AuthSession(access_token=access_token, user_id=user.id, email=user.email, aal=aal)
        if aal == AAL2 and user.verified_factors:
            flow.state = FlowState.AUTHENTICATED
            return flow
        flow.state = FlowState.PASSWORD_VERIFIED
        if factor_id is None:
            return flow
        factor = next((f for f in user.factors if f.id == factor_id), None)
        if factor is None:
            raise NotFound("Factor not found")
        flow.factor_id = factor.id
        if factor.verified:
            flow.challenge_id = challenge_id
            flow.state = FlowState.FACTOR_CHALLENGE_ISSUED
        else:
            flow.state = FlowState.FACTOR_ENROLLMENT_PENDING
        return flow

    @property
    def authenticated(self) -> bool:
        return self.state == FlowState.AUTHENTICATED and self.session is not None and self.session.aal == AAL2

    def _transition(self, new_state: FlowState) -> None:
        if new_state not in VALID_TRANSITIONS[self.state]:
            logger.warning("Invalid auth transition %s -> %s", self.state.value, new_state.value)
            raise InvalidTransition(f"Cannot go from {self.state.value} to {new_state.value}")
        if new_state != self.state:
            logger.info(
                "Auth flow for %s: %s -> %s",
                self.session.email if self.session else "?", self.state.value, new_state.value,
            )
        self.state = new_state

    def _require_session(self) -> AuthSession:
        if self.session is None:
            raise InvalidTransition("Sign in with email and password first")
        return self.session

    async def login(self, email: str, password: str) -> FlowState:
        """Check the password, then branch to enrollment or to a challenge.

        Bad credentials raise InvalidCredentials; any other provider failure
        surfaces as ProviderError.
        """
        if self.state != FlowState.UNAUTHENTICATED:
            raise InvalidTransition("Already signed in")
        self.session = await self.provider.sign_in_with_password(email, password)
        self._transition(FlowState.PASSWORD_VERIFIED)
        factors = await self.list_factors()
        if factors:
            # First verified factor in provider order
            await self.issue_challenge(factors[0].id)
        else:
            await self.enroll()
        return self.state

    async def list_factors(self) -> List[Factor]:
        """Usable (verified TOTP) factors, in provider list order."""
        session = self._require_session()
        factors = await self.provider.list_factors(session.access_token)
        return [f for f in factors if f.verified and f.factor_type == "totp"]

    async def enroll(self) -> Enrollment:
        """Start TOTP enrollment. Only allowed while the user has no verified factor."""
        session = self._require_session()
        if self.state not in (FlowState.PASSWORD_VERIFIED, FlowState.FACTOR_ENROLLMENT_PENDING):
            raise InvalidTransition(f"Cannot enroll from {self.state.value}")
        if await self.list_factors():
            raise InvalidTransition("A verified factor already exists; verify with it instead")
        self.enrollment = await self.provider.enroll_totp(session.access_token, config.MFA_FRIENDLY_NAME)
        self.factor_id = self.enrollment.factor_id
        self.challenge_id = None
        self._transition(FlowState.FACTOR_ENROLLMENT_PENDING)
        return self.enrollment

    async def issue_challenge(self, factor_id: Optional[str] = None) -> str:
        """Open a fresh single-use challenge for the factor."""
        session = self._require_session()
        factor_id = factor_id or self.factor_id
        if not factor_id:
            raise ValidationError("No factor selected")
        if self.state in (FlowState.UNAUTHENTICATED, FlowState.AUTHENTICATED):
            raise InvalidTransition(f"Cannot issue a challenge from {self.state.value}")
        self.challenge_id = await self.provider.challenge(session.access_token, factor_id)
        self.factor_id = factor_id
        if self.state != FlowState.FACTOR_ENROLLMENT_PENDING:
            self._transition(FlowState.FACTOR_CHALLENGE_ISSUED)
        return self.challenge_id

    async def verify(self, code: str) -> AuthSession:
        """Submit a six-digit code.

        During enrollment a new challenge is opened right before each
        attempt. In the challenge step the open challenge is used, and a
        failed attempt immediately replaces it since the old handle is
        spent. The code itself is never kept. Raises InvalidCredentials on
        a rejected code; the flow stays in its current step.
        """
        session = self._require_session()
        if self.state not in (FlowState.FACTOR_ENROLLMENT_PENDING, FlowState.FACTOR_CHALLENGE_ISSUED):
            raise InvalidTransition(f"Nothing to verify from {self.state.value}")
        if not isinstance(code, str) or not CODE_PATTERN.fullmatch(code):
            raise ValidationError("Enter the 6 digits")
        if self.state == FlowState.FACTOR_ENROLLMENT_PENDING:
            await self.issue_challenge(self.factor_id)
        elif not self.challenge_id:
            raise InvalidTransition("Request a challenge before verifying")

        try:
            verified = await self.provider.verify(session.access_token, self.factor_id, self.challenge_id, code)
        except InvalidCredentials as rejected:
            self.challenge_id = None
            logger.info("Second factor rejected for %s", session.email)
            if self.state == FlowState.FACTOR_CHALLENGE_ISSUED:
                try:
                    await self.issue_challenge(self.factor_id)
                except ProviderError as e:
                    raise ProviderError(
                        f"replacement challenge failed after rejected code: {e.detail}",
                        message=f"{rejected.message}. Could not issue a new challenge, please sign in again",
                    ) from rejected
            raise
        self.session = verified
        self.challenge_id = None
        self._transition(FlowState.AUTHENTICATED)
        return verified
