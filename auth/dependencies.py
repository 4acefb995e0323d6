"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by POST /auth/login for browser clients.

require_authentication() verifies the token and stores the Claims on
request.state.claims. require_group(...) builds a dependency that additionally
asks the group store whether the caller currently holds one of the groups.

Errors are raised as auth.errors.AuthError subclasses and rendered by the
AuthError handler in api/main.py.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from fastapi import Depends, Request

from auth.guard import extract_bearer_token, normalize_required, validate_required
from auth.models import Claims
from auth.service import AuthService
from core.config import get_settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def token_from_request(request: Request) -> str | None:
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    return request.cookies.get("access_token") or None


def require_authentication(request: Request) -> Claims:
    """Require a valid token. Raises MissingToken / InvalidToken / MissingSubject (401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: Claims = Depends(require_authentication)): ...
    """
    claims = get_auth_service(request).guard.authenticate(token_from_request(request))
    request.state.claims = claims
    return claims


def require_group(*groups: str | Iterable[str]) -> Callable[..., Coroutine[Any, Any, Claims]]:
    """Build a dependency that admits callers holding at least one of groups.

    The group names are checked against KNOWN_GROUPS here, when the route is
    declared, so a misspelled group fails at import time instead of silently
    denying every request:

        @router.get("/admin/dashboard")
        async def route(claims: Claims = Depends(require_group("Admin"))): ...
    """
    flat: list[str] = []
    for item in groups:
        flat.extend(normalize_required(item))
    required = validate_required(flat, get_settings().known_groups)

    async def _dependency(request: Request, claims: Claims = Depends(require_authentication)) -> Claims:
        decision = await get_auth_service(request).require_group(claims, required)
        request.state.groups = decision.actual
        return claims

    return _dependency
