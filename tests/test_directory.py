"""
tests/test_directory.py -- Credential directory contract: LocalDirectory and BoundedDirectory.

Covers:
  - user CRUD on the local directory (duplicate, missing, partial update, paging)
  - BoundedDirectory turns timeouts and connection failures into
    ProviderUnavailable and lets business errors through unchanged
  - a provider outage during login surfaces as retryable, never as a rejection
  - the first Admin is bootstrapped from settings only into an empty directory
"""

from __future__ import annotations

import asyncio

import pytest

from api.main import bootstrap_admin
from auth.directory import BoundedDirectory
from auth.errors import DuplicateUsername, InvalidCredentials, ProviderUnavailable, UserNotFound
from auth.groups import LocalGroupStore
from auth.models import PrincipalAttributes, PrincipalStatus
from auth.service import AuthService
from core.config import Settings


class _StubDirectory:
    """Just enough of a directory for BoundedDirectory to wrap."""

    def __init__(self, behaviour: str) -> None:
        self.behaviour = behaviour
        self.closed = False

    async def verify_password(self, username, password):
        if self.behaviour == "slow":
            await asyncio.sleep(5)
        if self.behaviour == "down":
            raise ConnectionRefusedError("directory unreachable")
        raise InvalidCredentials()

    async def list_groups_for_user(self, username):
        return ["User"]

    def close(self) -> None:
        self.closed = True


class TestLocalDirectory:
    @pytest.mark.asyncio
    async def test_create_and_get(self, directory) -> None:
        created = await directory.create_user(
            "alice",
            "alice@example.com",
            "password1",
            PrincipalAttributes(given_name="Alice", family_name="Liddell"),
        )
        assert created.status is PrincipalStatus.ACTIVE
        fetched = await directory.get_user("alice")
        assert fetched.email == "alice@example.com"
        assert fetched.given_name == "Alice"
        assert await directory.has_users()

    @pytest.mark.asyncio
    async def test_temporary_user_is_unconfirmed(self, directory) -> None:
        created = await directory.create_user("temp", "temp@example.com", "temporary1", temporary=True)
        assert created.status is PrincipalStatus.UNCONFIRMED

    @pytest.mark.asyncio
    async def test_duplicate_username(self, directory) -> None:
        await directory.create_user("alice", "alice@example.com", "password1")
        with pytest.raises(DuplicateUsername):
            await directory.create_user("alice", "other@example.com", "password2")

    @pytest.mark.asyncio
    async def test_missing_user(self, directory) -> None:
        with pytest.raises(UserNotFound):
            await directory.get_user("ghost")
        with pytest.raises(UserNotFound):
            await directory.set_user_status("ghost", PrincipalStatus.DISABLED)

    @pytest.mark.asyncio
    async def test_partial_attribute_update(self, directory) -> None:
        await directory.create_user("alice", "alice@example.com", "password1", PrincipalAttributes(given_name="Alice"))
        updated = await directory.update_user_attributes("alice", PrincipalAttributes(family_name="Liddell"))
        assert updated.given_name == "Alice"
        assert updated.family_name == "Liddell"
        assert updated.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_list_users_pages(self, directory) -> None:
        for name in ("u1", "u2", "u3"):
            await directory.create_user(name, f"{name}@example.com", "password1")
        first = await directory.list_users(limit=2, offset=0)
        rest = await directory.list_users(limit=2, offset=2)
        assert len(first) == 2
        assert len(rest) == 1
        assert {p.username for p in first + rest} == {"u1", "u2", "u3"}

    @pytest.mark.asyncio
    async def test_empty_directory(self, directory) -> None:
        assert not await directory.has_users()


class TestBoundedDirectory:
    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_unavailable(self) -> None:
        bounded = BoundedDirectory(_StubDirectory("slow"), timeout=0.05)
        with pytest.raises(ProviderUnavailable) as exc_info:
            await bounded.verify_password("alice", "password1")
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error_becomes_provider_unavailable(self) -> None:
        bounded = BoundedDirectory(_StubDirectory("down"), timeout=1.0)
        with pytest.raises(ProviderUnavailable):
            await bounded.verify_password("alice", "password1")

    @pytest.mark.asyncio
    async def test_business_errors_pass_through(self) -> None:
        bounded = BoundedDirectory(_StubDirectory("normal"), timeout=1.0)
        with pytest.raises(InvalidCredentials):
            await bounded.verify_password("alice", "password1")

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            BoundedDirectory(_StubDirectory("normal"), timeout=0)

    def test_close_reaches_inner(self) -> None:
        inner = _StubDirectory("normal")
        BoundedDirectory(inner, timeout=1.0).close()
        assert inner.closed

    @pytest.mark.asyncio
    async def test_outage_during_login_is_retryable(self, tokens) -> None:
        bounded = BoundedDirectory(_StubDirectory("slow"), timeout=0.05)
        service = AuthService(bounded, LocalGroupStore(["Admin", "User"]), tokens)
        with pytest.raises(ProviderUnavailable):
            await service.authenticate("alice", "password1")


class TestBootstrapAdmin:
    @pytest.mark.asyncio
    async def test_creates_admin_only_when_empty(self, directory, service) -> None:
        settings = Settings(debug=True, bootstrap_admin_username="root", bootstrap_admin_password="rootpass123")
        assert await bootstrap_admin(settings, directory, service)
        assert await service.list_groups_for_principal("root") == ["Admin"]
        assert (await service.authenticate("root", "rootpass123")).succeeded

        assert not await bootstrap_admin(settings, directory, service)

    @pytest.mark.asyncio
    async def test_skipped_when_users_exist(self, directory, service) -> None:
        await service.register("alice", "alice@example.com", "password1")
        settings = Settings(debug=True, bootstrap_admin_username="root", bootstrap_admin_password="rootpass123")
        assert not await bootstrap_admin(settings, directory, service)
        with pytest.raises(UserNotFound):
            await service.get_profile("root")

    @pytest.mark.asyncio
    async def test_skipped_without_credentials(self, directory, service) -> None:
        assert not await bootstrap_admin(Settings(debug=True), directory, service)
        assert not await directory.has_users()
