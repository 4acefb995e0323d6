"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores, the
challenge flow and routes do the work; these types only own domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from auth.errors import ChallengeRequired


class PrincipalStatus(str, Enum):
    UNCONFIRMED = "unconfirmed"
    ACTIVE = "active"
    DISABLED = "disabled"


class ChallengeKind(str, Enum):
    """Second steps a directory may demand before a login is complete."""

    PASSWORD_RESET_REQUIRED = "password-reset-required"
    SMS_OTP = "sms-otp"
    TOTP = "totp"


class LoginState(str, Enum):
    INIT = "init"
    AWAITING_PRIMARY = "awaiting_primary"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class MfaState(str, Enum):
    DISABLED = "disabled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


@dataclass
class PrincipalAttributes:
    """Typed attribute payload for create/update calls.

    Known fields are first-class; anything else a directory supports goes in
    extra. None means "leave unchanged" on update.
    """

    email: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass
class Principal:
    """An identity record owned by the credential directory.

    username is the immutable, case-sensitive identity key. The core only
    reads and mutates principals through the directory adapter.
    """

    username: str
    email: str = ""
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    given_name: str = ""
    family_name: str = ""
    extra: dict[str, str] = field(default_factory=dict)
    created_at: str | None = None


@dataclass(frozen=True)
class ChallengeSession:
    """A pending second step. The session_token is provider-issued and opaque.

    The core passes this through to the client and back; it never stores it.
    """

    session_token: str
    kind: ChallengeKind
    username: str
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class ChallengeIssued:
    """Directory answer meaning "password accepted, another step is required"."""

    kind: ChallengeKind
    session: ChallengeSession


@dataclass(frozen=True)
class Claims:
    """Decoded, signature-verified token contents.

    This is the only token representation downstream code may trust. groups is
    a snapshot taken at issuance time.
    """

    subject: str
    groups: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    token_id: str | None = None


@dataclass
class MfaEnrollment:
    """Per-principal MFA state. secret is never sent to clients after enrollment."""

    username: str
    state: MfaState = MfaState.DISABLED
    secret: str | None = None
    preferred: bool = False


@dataclass(frozen=True)
class SoftwareTokenAssociation:
    """A freshly allocated authenticator-app secret and its otpauth:// URI."""

    secret: str
    provisioning_uri: str


@dataclass
class LoginResult:
    """Outcome of one call into the challenge state machine.

    status is "success" (token + claims set) or "challenge" (challenge set).
    Rejections are raised as AuthError subclasses, never returned.
    """

    status: str
    state: LoginState
    username: str
    token: str | None = None
    claims: Claims | None = None
    challenge: ChallengeSession | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def require_token(self) -> str:
        """Return the issued token, or raise ChallengeRequired for a challenge result."""
        if self.token is None:
            kind = self.challenge.kind.value if self.challenge else "unknown"
            raise ChallengeRequired(f"Login requires a {kind} challenge step.", detail={"challenge": kind})
        return self.token


@dataclass(frozen=True)
class GroupDecision:
    """Result of an authorization check. actual only ever describes the caller."""

    allowed: bool
    required: tuple[str, ...]
    actual: tuple[str, ...]
