"""Error taxonomy shared by services and the HTTP layer."""
from __future__ import annotations


class HubError(Exception):
    """Base class. ``message`` is safe to show to the admin user."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HubError):
    """Bad input shape or a reference to a record that does not exist."""

    status_code = 400


class NotFound(ValidationError):
    """A referenced duel, player, user or factor does not exist."""

    status_code = 404


class InvalidTransition(HubError):
    """A duel or authentication step was attempted from the wrong state."""

    status_code = 409


class AlreadySubmitted(HubError):
    """The acting party already submitted a score for this duel."""

    status_code = 409


class InvalidCredentials(HubError):
    """Bad email/password or a rejected one-time code."""

    status_code = 401


class ProviderError(HubError):
    """Opaque failure from an external service. ``detail`` is for logs only."""

    status_code = 502

    def __init__(self, detail: str, message: str = "External service error, please try again"):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        return self.detail
