"""
tests/conftest.py -- Shared test fixtures for AuthGate unit and integration tests.

This module provides:
  - directory / tokens / service: a file-backed LocalDirectory in tmp_path,
    a TokenService with a fixed key, and the AuthService composed over them.
  - FrozenClock: an injectable clock for token and challenge expiry tests.
  - _make_test_directory(): isolated in-memory directory for API tests
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client: TestClient plus an Admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs route handlers in a thread pool and the
directory itself hops to worker threads. Plain :memory: DBs are per-connection
and would present a blank schema to each worker thread.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError. The login
rate limit is raised so integration tests that log in repeatedly are not
throttled.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_auth_service
from auth.groups import DirectoryGroupStore
from auth.local_directory import LocalDirectory
from auth.service import AuthService
from auth.tokens import TokenService
from core.config import get_settings

KNOWN_GROUPS = ["Admin", "Moderator", "User"]
TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"


class FrozenClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def directory(tmp_path) -> Generator[LocalDirectory, None, None]:
    d = LocalDirectory(f"sqlite:///{tmp_path / 'directory.db'}", challenge_ttl_seconds=180)
    yield d
    d.close()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET, ttl_seconds=3600)


@pytest.fixture
def service(directory: LocalDirectory, tokens: TokenService) -> AuthService:
    return AuthService(directory, DirectoryGroupStore(directory, KNOWN_GROUPS), tokens, default_group="User")


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------


def _make_test_directory(db_suffix: str) -> LocalDirectory:
    """Create an isolated named shared-memory SQLite directory.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    url = f"sqlite:///file:test_directory_{db_suffix}?mode=memory&cache=shared&uri=true"
    return LocalDirectory(url)


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, username) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies and exception handlers against an
    isolated in-memory directory. An Admin user is created before the client
    starts; token is a Bearer JWT for it.
    """
    directory = _make_test_directory(request.module.__name__.rsplit(".", 1)[-1])
    service = build_auth_service(get_settings(), directory)
    asyncio.run(service.register(ADMIN_USERNAME, "admin@example.com", ADMIN_PASSWORD, groups=["Admin"]))
    token = service.tokens.issue(ADMIN_USERNAME, ["Admin"])

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, ADMIN_USERNAME

    directory.close()