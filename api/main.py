"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the auth core once (directory -> group store -> token
service -> AuthService) and closes the directory on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.directory import BoundedDirectory
from auth.errors import AuthError, DuplicateUsername, InsufficientPrivileges, ProviderUnavailable
from auth.groups import build_group_store
from auth.local_directory import LocalDirectory
from auth.service import AuthService
from auth.tokens import TokenService
from core.config import Settings, get_settings

API_VERSION = "0.1.0"
ADMIN_GROUP = "Admin"
PROVIDER_RETRY_AFTER_SECONDS = 5

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_auth_service(settings: Settings, directory: LocalDirectory) -> AuthService:
    """Compose the auth core around an already-open directory.

    Shared by the lifespan and by tests, which pass an in-memory directory.
    """
    bounded = BoundedDirectory(directory, settings.directory_timeout_seconds)
    groups = build_group_store(
        settings.group_source,
        bounded,
        settings.known_groups,
        settings.local_group_seed,
    )
    tokens = TokenService(settings.secret_key, ttl_seconds=settings.token_ttl_seconds)
    return AuthService(bounded, groups, tokens, default_group=settings.default_group)


async def bootstrap_admin(settings: Settings, directory: LocalDirectory, service: AuthService) -> bool:
    """Create the first Admin from BOOTSTRAP_ADMIN_* when the directory is empty.

    Returns True when an account was created.
    """
    username = settings.bootstrap_admin_username
    password = settings.bootstrap_admin_password
    if not username or not password:
        return False
    if ADMIN_GROUP not in settings.known_groups:
        logger.warning("Bootstrap admin skipped: %r is not in KNOWN_GROUPS", ADMIN_GROUP)
        return False
    if await directory.has_users():
        return False
    try:
        await service.register(username, "", password, groups=[ADMIN_GROUP])
    except DuplicateUsername:
        return False
    logger.info("Bootstrap admin %r created", username)
    return True


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are validated first, so a bad group vocabulary or a
    missing SECRET_KEY stops the process before it accepts a request.
    """
    settings = get_settings()
    logger.info("AuthGate API starting up")
    directory = LocalDirectory(
        settings.database_url,
        challenge_ttl_seconds=settings.challenge_ttl_seconds,
        mfa_issuer=settings.mfa_issuer,
    )
    app.state.auth_service = build_auth_service(settings, directory)
    await bootstrap_admin(settings, directory, app.state.auth_service)
    logger.info(
        "Auth initialized (group_source=%s, groups=%s)",
        settings.group_source,
        ",".join(settings.known_groups),
    )

    yield

    directory.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Username/password login with challenge steps, signed tokens and group-based authorization.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"error": ErrorDetail}. Fields left as None are dropped
# so a 401 never carries group or retry hints.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, detail: ErrorDetail, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-layer error with its own status and error code.

    Only client_message reaches the body: rejections that must look alike
    (unknown user, wrong password, wrong code, replayed session) share one
    public message. 403 responses list the caller's own groups; 503 responses
    carry Retry-After and retryable=true.
    """
    forbidden = isinstance(exc, InsufficientPrivileges)
    detail = ErrorDetail(
        code=exc.error_code,
        message=exc.client_message,
        detail=exc.detail.get("reason"),
        retryable=True if exc.retryable else None,
        required_groups=list(exc.required) if forbidden else None,
        actual_groups=list(exc.actual) if forbidden else None,
        state=exc.detail.get("state"),
    )
    headers: dict[str, str] = {}
    if isinstance(exc, ProviderUnavailable):
        headers["Retry-After"] = str(PROVIDER_RETRY_AFTER_SECONDS)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
        headers["Cache-Control"] = "no-store"
    return _error_response(exc.status_code, detail, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for login and challenge floods [H2]; the limit string is the only detail."""
    logger.info("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "unknown")
    retry_after = int(getattr(exc, "retry_after", 60))
    detail = ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail), retryable=True)
    return _error_response(429, detail, {"Retry-After": str(retry_after)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming each offending field.

    Submitted values are left out: the failing input may be a password or an
    OTP code.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    detail = ErrorDetail(code="validation_error", message="Request validation failed.", detail=problems)
    return _error_response(422, detail)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException; a dict detail is used as the error field as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    detail = ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
    return _error_response(exc.status_code, detail, exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected errors; the exception text goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Liveness probe; unauthenticated and not rate limited."""
    return HealthResponse(version=API_VERSION)
