"""
tests/test_guard.py -- Authorization guard and its FastAPI adapter.

Covers:
  - missing / malformed / expired / subject-less tokens
  - require_group allow and deny, single group and any-of
  - the group store, not the token snapshot, decides
  - 403 carries only the caller's own groups
  - route-declaration validation of group names
"""

from __future__ import annotations

import pytest
from jose import jwt

from auth.dependencies import require_group as require_group_dependency
from auth.errors import InsufficientPrivileges, InvalidToken, MissingSubject, MissingToken
from auth.groups import LocalGroupStore
from auth.guard import AuthorizationGuard, extract_bearer_token, normalize_required, validate_required
from auth.tokens import ALGORITHM, TokenService

SECRET = "guard-test-signing-key-0123456789abcdef"
KNOWN = ["Admin", "Moderator", "User"]


@pytest.fixture
def token_service(clock) -> TokenService:
    return TokenService(SECRET, ttl_seconds=3600, clock=clock)


@pytest.fixture
def store() -> LocalGroupStore:
    return LocalGroupStore(KNOWN, {"admin": ["Admin"], "mod": ["Moderator", "User"], "nobody": []})


@pytest.fixture
def guard(token_service: TokenService, store: LocalGroupStore) -> AuthorizationGuard:
    return AuthorizationGuard(token_service, store)


class TestHelpers:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer abc.def.ghi", "abc.def.ghi"),
            ("Basic dXNlcjpwYXNz", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer_token(self, header, expected) -> None:
        assert extract_bearer_token(header) == expected

    def test_normalize_required(self) -> None:
        assert normalize_required("Admin") == ("Admin",)
        assert normalize_required(["User", "Admin", "User"]) == ("User", "Admin")


class TestAuthenticate:
    def test_missing_token(self, guard: AuthorizationGuard) -> None:
        with pytest.raises(MissingToken):
            guard.authenticate(None)
        with pytest.raises(MissingToken):
            guard.authenticate("")

    def test_garbage_token(self, guard: AuthorizationGuard) -> None:
        with pytest.raises(InvalidToken) as exc_info:
            guard.authenticate("garbage")
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["reason"] == "invalid_token"

    def test_expired_token(self, guard: AuthorizationGuard, token_service: TokenService, clock) -> None:
        token = token_service.issue("admin", ["Admin"], ttl=10)
        clock.advance(11)
        with pytest.raises(InvalidToken) as exc_info:
            guard.authenticate(token)
        assert exc_info.value.detail["reason"] == "token_expired"

    def test_token_without_subject(self, guard: AuthorizationGuard, clock) -> None:
        now = int(clock().timestamp())
        token = jwt.encode({"iat": now, "exp": now + 60, "groups": ["Admin"]}, SECRET, algorithm=ALGORITHM)
        with pytest.raises(MissingSubject):
            guard.authenticate(token)

    def test_valid_token(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("admin", ["Admin"]))
        assert claims.subject == "admin"


class TestRequireGroup:
    @pytest.mark.asyncio
    async def test_admin_allowed(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("admin", ["Admin"]))
        decision = await guard.require_group(claims, "Admin")
        assert decision.allowed
        assert decision.actual == ("Admin",)

    @pytest.mark.asyncio
    async def test_any_of_list(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("mod", ["Moderator", "User"]))
        assert (await guard.require_group(claims, ["Admin", "User"])).allowed

    @pytest.mark.asyncio
    async def test_denied_lists_only_caller_groups(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("mod", ["Moderator", "User"]))
        with pytest.raises(InsufficientPrivileges) as exc_info:
            await guard.require_group(claims, "Admin")
        err = exc_info.value
        assert err.status_code == 403
        assert err.required == ("Admin",)
        assert err.actual == ("Moderator", "User")

    @pytest.mark.asyncio
    async def test_no_groups_is_denied(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("nobody", []))
        with pytest.raises(InsufficientPrivileges) as exc_info:
            await guard.require_group(claims, ["Admin", "Moderator", "User"])
        assert exc_info.value.actual == ()

    @pytest.mark.asyncio
    async def test_store_overrides_token_snapshot(
        self, guard: AuthorizationGuard, token_service: TokenService, store: LocalGroupStore
    ) -> None:
        claims = guard.authenticate(token_service.issue("admin", ["Admin"]))
        await store.remove_from_group("admin", "Admin")
        with pytest.raises(InsufficientPrivileges):
            await guard.require_group(claims, "Admin")

    @pytest.mark.asyncio
    async def test_evaluate_does_not_raise(self, guard: AuthorizationGuard, token_service: TokenService) -> None:
        claims = guard.authenticate(token_service.issue("nobody", []))
        decision = await guard.evaluate(claims, "Admin")
        assert not decision.allowed


class TestValidateRequired:
    def test_rejects_empty(self) -> None:
        with pytest.raises(ValueError):
            validate_required([], KNOWN)

    def test_rejects_unknown(self) -> None:
        with pytest.raises(ValueError):
            validate_required(["Admin", "Admins"], KNOWN)

    def test_accepts_known_and_dedupes(self) -> None:
        assert validate_required("Admin", KNOWN) == ("Admin",)
        assert validate_required(["User", "Admin", "User"], KNOWN) == ("User", "Admin")

    def test_dependency_factory_rejects_unknown_group(self) -> None:
        with pytest.raises(ValueError):
            require_group_dependency("Superuser")

    def test_dependency_factory_rejects_empty(self) -> None:
        with pytest.raises(ValueError):
            require_group_dependency()

    def test_dependency_factory_accepts_lists(self) -> None:
        assert callable(require_group_dependency(["User", "Admin"], "Moderator"))
