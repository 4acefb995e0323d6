"""
api/routes/v1/auth.py -- Login, challenge, token, profile and MFA endpoints.

Routes:
  POST /api/v1/auth/register           -- self-registration (SELF_REGISTRATION_ENABLED)
  POST /api/v1/auth/login              -- password login; token or challenge
  POST /api/v1/auth/mfa-challenge      -- answer the challenge returned by /login
  POST /api/v1/auth/logout             -- clears cookie; 200
  GET  /api/v1/auth/verify             -- decoded claims of the presented token
  GET  /api/v1/auth/me                 -- current identity and live groups
  GET  /api/v1/users/profile           -- own profile
  PUT  /api/v1/users/profile           -- update own profile attributes
  GET  /api/v1/auth/mfa-status         -- own MFA enrollment state
  POST /api/v1/auth/enable-mfa         -- start TOTP enrollment (secret shown once)
  POST /api/v1/auth/verify-mfa         -- confirm enrollment with a code
  POST /api/v1/auth/disable-mfa        -- disable MFA with a current code

Security:
  [H2] POST /login and /mfa-challenge are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Every authentication rejection returns the same 401 body; the
       directory runs a dummy bcrypt check for unknown usernames.
  [M5] Cache-Control: no-store on every response that carries a token,
       a challenge session or an MFA secret.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChallengeAnswerRequest,
    ChallengeKindEnum,
    ChallengeResponse,
    ClaimsResponse,
    LoginRequest,
    LoginSuccessResponse,
    MeResponse,
    MessageResponse,
    MfaDisableRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    ProfileUpdate,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import get_auth_service, require_authentication
from auth.models import Claims, LoginResult, PrincipalAttributes
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/register, /login, /mfa-challenge, /logout: public
# - everything else: requires a valid token (require_authentication)
router = APIRouter()


def _set_auth_cookie(response: JSONResponse, token: str, max_age: int) -> None:
    """Write the token as an httpOnly cookie that expires together with the JWT."""
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def _login_response(result: LoginResult) -> JSONResponse:
    """Render a LoginResult as either the success body or the challenge body."""
    if result.succeeded:
        claims = result.claims
        expires_in = int((claims.expires_at - claims.issued_at).total_seconds())
        resp = JSONResponse(
            status_code=200,
            content=LoginSuccessResponse(
                access_token=result.token,
                token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
                expires_in=expires_in,
                username=result.username,
                groups=sorted(claims.groups),
            ).model_dump(),
        )
        _set_auth_cookie(resp, result.token, expires_in)
    else:
        challenge = result.challenge
        resp = JSONResponse(
            status_code=200,
            content=ChallengeResponse(
                challenge=ChallengeKindEnum(challenge.kind.value),
                session=challenge.session_token,
                username=result.username,
                expires_at=challenge.expires_at,
            ).model_dump(mode="json"),
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account in DEFAULT_GROUP. Disabled when SELF_REGISTRATION_ENABLED=false."""
    if not _settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Self-registration is disabled."},
        )
    service = get_auth_service(request)
    principal = await service.register(
        body.username,
        body.email,
        body.password,
        PrincipalAttributes(given_name=body.given_name, family_name=body.family_name),
    )
    groups = await service.list_groups_for_principal(principal.username)
    return UserResponse.from_principal(principal, groups)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginSuccessResponse | ChallengeResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Verify username and password.

    Returns a token when no further step is needed, otherwise the challenge
    kind and an opaque session to send back to /auth/mfa-challenge. Wrong
    username, wrong password and disabled account all produce the same 401 [C1].
    """
    result = await get_auth_service(request).authenticate(body.username, body.password)
    return _login_response(result)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/mfa-challenge", response_model=LoginSuccessResponse | ChallengeResponse)
async def mfa_challenge(request: Request, body: ChallengeAnswerRequest) -> JSONResponse:
    """Answer a pending challenge.

    A session is single use: a wrong code, an expired session or a replay all
    end the attempt with 401 and the client must log in again. Answering a
    password-reset challenge may return a second (totp) challenge.
    """
    result = await get_auth_service(request).respond_to_challenge(
        body.username, body.session, body.code, body.challenge.value
    )
    return _login_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie. Bearer tokens stay valid until they expire."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/verify", response_model=ClaimsResponse)
async def verify(claims: Claims = Depends(require_authentication)) -> ClaimsResponse:
    """Return the decoded claims of the presented token."""
    return ClaimsResponse.from_claims(claims)


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, claims: Claims = Depends(require_authentication)) -> MeResponse:
    """Return the caller's identity with both live and token-snapshot groups."""
    groups = await get_auth_service(request).list_groups_for_principal(claims.subject)
    return MeResponse(
        username=claims.subject,
        groups=groups,
        token_groups=sorted(claims.groups),
        expires_at=claims.expires_at,
    )


@router.get("/users/profile", response_model=UserResponse)
async def get_profile(request: Request, claims: Claims = Depends(require_authentication)) -> UserResponse:
    service = get_auth_service(request)
    principal = await service.get_profile(claims.subject)
    return UserResponse.from_principal(principal, await service.list_groups_for_principal(claims.subject))


@router.put("/users/profile", response_model=UserResponse)
async def update_profile(
    request: Request,
    body: ProfileUpdate,
    claims: Claims = Depends(require_authentication),
) -> UserResponse:
    """Update email and/or name attributes. Omitted fields are left unchanged."""
    service = get_auth_service(request)
    principal = await service.update_profile(
        claims.subject,
        PrincipalAttributes(email=body.email, given_name=body.given_name, family_name=body.family_name),
    )
    return UserResponse.from_principal(principal, await service.list_groups_for_principal(claims.subject))


# ---------------------------------------------------------------------------
# MFA (authenticated, always for the caller's own account)
# ---------------------------------------------------------------------------


@router.get("/auth/mfa-status", response_model=MfaStatusResponse)
async def mfa_status(request: Request, claims: Claims = Depends(require_authentication)) -> MfaStatusResponse:
    enrollment = await get_auth_service(request).mfa_status(claims.subject)
    return MfaStatusResponse.from_enrollment(enrollment)


@router.post("/auth/enable-mfa", response_model=MfaSetupResponse)
async def enable_mfa(request: Request, claims: Claims = Depends(require_authentication)) -> JSONResponse:
    """Start TOTP enrollment. Returns 409 mfa_already_enabled when MFA is already on.

    The secret and provisioning URI are returned exactly once; the client
    renders them as a QR code and then calls /auth/verify-mfa.
    """
    start = await get_auth_service(request).begin_mfa_enrollment(claims.subject)
    resp = JSONResponse(
        content=MfaSetupResponse(
            state=start.state.value,
            secret=start.secret,
            provisioning_uri=start.provisioning_uri,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/verify-mfa", response_model=MfaStatusResponse)
async def verify_mfa(
    request: Request,
    body: MfaVerifyRequest,
    claims: Claims = Depends(require_authentication),
) -> MfaStatusResponse:
    """Confirm enrollment. A wrong code returns 400 and leaves enrollment pending."""
    enrollment = await get_auth_service(request).confirm_mfa_enrollment(claims.subject, body.code, body.secret)
    return MfaStatusResponse.from_enrollment(enrollment)


@router.post("/auth/disable-mfa", response_model=MfaStatusResponse)
async def disable_mfa(
    request: Request,
    body: MfaDisableRequest,
    claims: Claims = Depends(require_authentication),
) -> MfaStatusResponse:
    enrollment = await get_auth_service(request).disable_mfa(claims.subject, body.code)
    return MfaStatusResponse.from_enrollment(enrollment)
