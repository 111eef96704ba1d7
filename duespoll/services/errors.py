"""Domain exceptions raised by the voting services."""
from __future__ import annotations

import enum
from typing import Any


class DuesPollError(RuntimeError):
    """Base exception for service errors.

    ``status_code`` is the HTTP status the API layer answers with when the
    error escapes a route handler.
    """

    status_code: int = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Any:
        return self.message


class ValidationError(DuesPollError):
    """Raised when user supplied data is incomplete or malformed."""

    status_code = 422


class PollValidationError(ValidationError):
    """Raised when a poll definition is not acceptable."""


class InvalidImageError(ValidationError):
    """Raised when an uploaded payload is not a decodable image."""


class NotFoundError(DuesPollError):
    status_code = 404


class PollNotFoundError(NotFoundError):
    """Raised when the poll identifier does not exist."""


class CandidateNotFoundError(NotFoundError):
    """Raised when the candidate does not belong to the poll."""


class BallotNotFoundError(NotFoundError):
    """Raised when a voter has no ballot for the poll."""


class ConflictError(DuesPollError):
    status_code = 409


class PollClosedError(ConflictError):
    """Raised when casting into a poll that is no longer active."""


class CastBlockedError(ConflictError):
    """Raised when a ballot can no longer be re-cast.

    Carries the ballot's current state so callers can report it.
    """

    def __init__(self, message: str, *, state: Any) -> None:
        super().__init__(message, state=state)
        self.state = state

    def to_detail(self) -> Any:
        state = getattr(self.state, "value", self.state)
        return {"message": self.message, "state": state}


class InvalidTransitionError(ConflictError):
    """Raised when an event is not allowed from the ballot's current state."""


class PermissionDeniedError(DuesPollError):
    status_code = 403


class BlobStoreError(DuesPollError):
    """Raised when the blob store cannot complete an operation; safe to retry."""

    status_code = 503


class AuthErrorCode(str, enum.Enum):
    INVALID_EMAIL = "invalid-email"
    WEAK_PASSWORD = "weak-password"
    EMAIL_IN_USE = "email-already-in-use"
    MISSING_FIELDS = "missing-fields"
    INVALID_CREDENTIALS = "invalid-credentials"
    TOKEN_REVOKED = "token-revoked"
    INVALID_TOKEN = "invalid-token"
    UNKNOWN = "unknown"


AUTH_ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_EMAIL: "Invalid email format.",
    AuthErrorCode.WEAK_PASSWORD: "Password should be at least {min_length} characters.",
    AuthErrorCode.EMAIL_IN_USE: "This email is already registered.",
    AuthErrorCode.MISSING_FIELDS: "All fields are required.",
    AuthErrorCode.INVALID_CREDENTIALS: "Invalid email or password.",
    AuthErrorCode.TOKEN_REVOKED: "Session has been signed out.",
    AuthErrorCode.INVALID_TOKEN: "Session is invalid or has expired.",
}
GENERIC_AUTH_MESSAGE = "Invalid credentials or a network error occurred."

_AUTH_STATUS_CODES: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_EMAIL: 400,
    AuthErrorCode.WEAK_PASSWORD: 400,
    AuthErrorCode.MISSING_FIELDS: 400,
    AuthErrorCode.EMAIL_IN_USE: 409,
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.TOKEN_REVOKED: 401,
    AuthErrorCode.INVALID_TOKEN: 401,
}


def auth_error_message(code: AuthErrorCode | str, **params: Any) -> str:
    """Map an auth error code to a user readable message, generic when unknown."""

    try:
        key = AuthErrorCode(code)
    except ValueError:
        return GENERIC_AUTH_MESSAGE
    template = AUTH_ERROR_MESSAGES.get(key)
    if template is None:
        return GENERIC_AUTH_MESSAGE
    try:
        return template.format(**params)
    except KeyError:
        return GENERIC_AUTH_MESSAGE


class AuthError(DuesPollError):
    """Authentication failure tagged with a known error code."""

    def __init__(self, code: AuthErrorCode | str, **params: Any) -> None:
        try:
            self.code = AuthErrorCode(code)
        except ValueError:
            self.code = AuthErrorCode.UNKNOWN
        super().__init__(auth_error_message(code, **params), code=self.code.value)
        self.status_code = _AUTH_STATUS_CODES.get(self.code, 400)

    def to_detail(self) -> Any:
        return {"code": self.code.value, "message": self.message}


__all__ = [
    "AUTH_ERROR_MESSAGES",
    "AuthError",
    "AuthErrorCode",
    "BallotNotFoundError",
    "BlobStoreError",
    "CandidateNotFoundError",
    "CastBlockedError",
    "ConflictError",
    "DuesPollError",
    "GENERIC_AUTH_MESSAGE",
    "InvalidImageError",
    "InvalidTransitionError",
    "NotFoundError",
    "PermissionDeniedError",
    "PollClosedError",
    "PollNotFoundError",
    "PollValidationError",
    "ValidationError",
    "auth_error_message",
]
