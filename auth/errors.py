"""
auth/errors.py -- Error taxonomy for authentication and authorization.

Every exception carries a stable error_code and an HTTP status_code so the
API layer can render them with a single exception handler. The auth layer
itself never imports FastAPI.

Propagation policy:
  ProviderUnavailable is the only retryable error. It is raised when the
  credential directory times out or cannot be reached, and it must reach the
  caller unchanged -- never converted into a rejection or, worse, a success.

  Everything else is a business-rule rejection and terminal for the attempt.
  Authentication rejections share one public message so a response never
  reveals which check failed or whether a username exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable

AUTHENTICATION_FAILED = "Authentication failed."


class AuthError(Exception):
    """Base class for every error the auth layer raises on purpose."""

    status_code: int = 400
    error_code: str = "auth_error"
    retryable: bool = False
    public_message: str | None = None

    def __init__(self, message: str = "", *, detail: dict | None = None) -> None:
        super().__init__(message or self.public_message or self.__class__.__name__)
        self.message = message or self.public_message or self.__class__.__name__
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        """Message safe to return to the client (internal detail stripped)."""
        return self.public_message or self.message


class InvalidRequest(AuthError):
    """Missing or malformed input (empty username, wrong code format, ...)."""

    status_code = 400
    error_code = "validation_error"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    """Unknown user, wrong password or disabled account; callers cannot tell them apart [C1]."""

    status_code = 401
    error_code = "authentication_failed"
    public_message = AUTHENTICATION_FAILED


class ChallengeRequired(AuthError):
    """A completed login was needed but the directory asked for another step."""

    status_code = 401
    error_code = "challenge_required"


class ChallengeVerificationFailed(AuthError):
    """Wrong code, expired or replayed challenge session."""

    status_code = 401
    error_code = "authentication_failed"
    public_message = AUTHENTICATION_FAILED


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    status_code = 401
    error_code = "invalid_token"


class TokenMalformed(TokenError):
    pass


class TokenExpired(TokenError):
    error_code = "token_expired"


class SignatureInvalid(TokenError):
    pass


class SubjectMissing(TokenError):
    pass


# ---------------------------------------------------------------------------
# Authorization guard
# ---------------------------------------------------------------------------


class MissingToken(AuthError):
    status_code = 401
    error_code = "unauthorized"
    public_message = "Authentication required."


class InvalidToken(AuthError):
    """Token presented but rejected by the verifier. cause holds the TokenError."""

    status_code = 401
    error_code = "invalid_token"
    public_message = "Invalid or expired token."

    def __init__(self, cause: TokenError) -> None:
        super().__init__(str(cause), detail={"reason": cause.error_code})
        self.cause = cause


class MissingSubject(AuthError):
    status_code = 401
    error_code = "invalid_token"
    public_message = "Token does not identify a user."


class InsufficientPrivileges(AuthError):
    """Caller holds none of the required groups.

    actual describes the caller's own groups only -- safe to disclose to them.
    """

    status_code = 403
    error_code = "forbidden"

    def __init__(self, required: Iterable[str], actual: Iterable[str]) -> None:
        self.required = tuple(required)
        self.actual = tuple(sorted(actual))
        super().__init__(
            f"Insufficient permissions. Required groups: {', '.join(self.required)}",
            detail={"required_groups": list(self.required), "actual_groups": list(self.actual)},
        )


# ---------------------------------------------------------------------------
# Directory / administration
# ---------------------------------------------------------------------------


class UserNotFound(AuthError):
    status_code = 404
    error_code = "not_found"
    public_message = "User not found."


class DuplicateUsername(AuthError):
    status_code = 409
    error_code = "conflict"
    public_message = "A user with that username already exists."


class UnknownGroup(AuthError):
    status_code = 400
    error_code = "unknown_group"

    def __init__(self, group: str) -> None:
        super().__init__(f"Unknown group: {group!r}")
        self.group = group


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class CodeMismatch(AuthError):
    status_code = 400
    error_code = "code_mismatch"
    public_message = "Invalid MFA code."


class MfaStateError(AuthError):
    """The requested MFA transition is not valid from the current state."""

    status_code = 409
    error_code = "mfa_state"

    def __init__(self, message: str, state) -> None:
        super().__init__(message, detail={"state": getattr(state, "value", state)})
        self.state = state


class MfaAlreadyEnabled(MfaStateError):
    error_code = "mfa_already_enabled"

    def __init__(self, state) -> None:
        super().__init__("MFA is already enabled.", state)


# ---------------------------------------------------------------------------
# Transient
# ---------------------------------------------------------------------------


class ProviderUnavailable(AuthError):
    """The credential directory timed out or could not be reached. Retry later."""

    status_code = 503
    error_code = "provider_unavailable"
    retryable = True
    public_message = "Identity provider unavailable. Please retry."
