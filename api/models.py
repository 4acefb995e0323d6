"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Claims, MfaEnrollment, Principal

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.@+-]{1,128}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ChallengeKindEnum(str, Enum):
    password_reset_required = "password-reset-required"
    sms_otp = "sms-otp"
    totp = "totp"


class AccountStatusEnum(str, Enum):
    active = "active"
    disabled = "disabled"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=256)


class ChallengeAnswerRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa-challenge.

    challenge echoes the kind returned by /login; it defaults to totp because
    that is the only second step most clients ever see. The code format is
    checked by the auth layer against the kind.
    """

    username: str = Field(min_length=1, max_length=128)
    session: str = Field(min_length=1, max_length=4096)
    code: str = Field(min_length=1, max_length=256)
    challenge: ChallengeKindEnum = ChallengeKindEnum.totp


class LoginSuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    groups: list[str]


class ChallengeResponse(BaseModel):
    """Second step required. session is opaque and must be sent back unchanged."""

    model_config = ConfigDict(frozen=True)

    status: Literal["challenge"] = "challenge"
    mfa_required: bool = True
    challenge: ChallengeKindEnum
    session: str
    username: str
    expires_at: datetime


class ClaimsResponse(BaseModel):
    """Response for GET /api/v1/auth/verify -- the decoded token."""

    model_config = ConfigDict(frozen=True)

    valid: bool = True
    username: str
    groups: list[str]
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: Claims) -> "ClaimsResponse":
        return cls(
            username=claims.subject,
            groups=sorted(claims.groups),
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )


class MeResponse(BaseModel):
    """Current identity. groups is live; token_groups is the issuance snapshot."""

    model_config = ConfigDict(frozen=True)

    username: str
    groups: list[str]
    token_groups: list[str]
    expires_at: datetime


# ---------------------------------------------------------------------------
# Users and profiles
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register (self-registration)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=256)
    given_name: Optional[str] = Field(default=None, max_length=255)
    family_name: Optional[str] = Field(default=None, max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users (admin).

    The account starts unconfirmed: the first login with temporary_password
    answers a password-reset-required challenge.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    temporary_password: str = Field(min_length=8, max_length=256)
    groups: list[str] = Field(default_factory=list, max_length=16)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/users/profile. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    given_name: Optional[str] = Field(default=None, max_length=255)
    family_name: Optional[str] = Field(default=None, max_length=255)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    email: str
    status: str
    given_name: str = ""
    family_name: str = ""
    created_at: Optional[str] = None
    groups: list[str] = []

    @classmethod
    def from_principal(cls, principal: Principal, groups: list[str] | None = None) -> "UserResponse":
        return cls(
            username=principal.username,
            email=principal.email,
            status=principal.status.value,
            given_name=principal.given_name,
            family_name=principal.family_name,
            created_at=principal.created_at,
            groups=groups or [],
        )


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{username}/role."""

    role: str = Field(min_length=1, max_length=64)
    status: Optional[AccountStatusEnum] = None


class GroupListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    groups: list[str]


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    state: str
    preferred: bool = False

    @classmethod
    def from_enrollment(cls, enrollment: MfaEnrollment) -> "MfaStatusResponse":
        return cls(
            enabled=enrollment.state.value == "enabled",
            state=enrollment.state.value,
            preferred=enrollment.preferred,
        )


class MfaSetupResponse(BaseModel):
    """Returned once by POST /auth/enable-mfa. The secret is never shown again."""

    model_config = ConfigDict(frozen=True)

    state: str
    secret: str
    provisioning_uri: str


class MfaVerifyRequest(BaseModel):
    code: str = Field(pattern=r"^\d{6}$")
    secret: str = Field(min_length=16, max_length=128)


class MfaDisableRequest(BaseModel):
    code: str = Field(pattern=r"^\d{6}$")


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    required_groups / actual_groups appear only on 403 responses and only ever
    describe the caller. state appears on MFA state conflicts.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retryable: Optional[bool] = None
    required_groups: Optional[list[str]] = None
    actual_groups: Optional[list[str]] = None
    state: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
