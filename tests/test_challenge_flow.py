"""
tests/test_challenge_flow.py -- Login state machine against the local directory.

Covers:
  - password login with and without groups; token carries the group set
  - uniform rejection for unknown user, wrong password, disabled account
  - TOTP challenge: success, wrong code, replay, cross-user session, bad format
  - one session redeemed at most once under concurrent answers
  - password-reset challenge, alone and chained into TOTP
  - challenge session expiry
  - groups are re-read at issuance; issued tokens keep their snapshot
  - LoginAttempt refuses illegal transitions
"""

from __future__ import annotations

import asyncio

import pyotp
import pytest

from auth.challenge import LoginAttempt
from auth.errors import AuthError, ChallengeVerificationFailed, InvalidCredentials, InvalidRequest
from auth.groups import DirectoryGroupStore
from auth.local_directory import LocalDirectory
from auth.models import ChallengeKind, LoginState, PrincipalStatus
from auth.service import AuthService

KNOWN = ["Admin", "Moderator", "User"]


async def _enable_mfa(service: AuthService, username: str) -> str:
    start = await service.begin_mfa_enrollment(username)
    await service.confirm_mfa_enrollment(username, pyotp.TOTP(start.secret).now(), start.secret)
    return start.secret


def _wrong_code(secret: str) -> str:
    """A six-digit code that is not valid for secret in the current window."""
    totp = pyotp.TOTP(secret)
    for candidate in ("000000", "111111", "222222", "333333"):
        if not totp.verify(candidate, valid_window=1):
            return candidate
    raise AssertionError("could not find an invalid code")


class TestPasswordLogin:
    @pytest.mark.asyncio
    async def test_admin_login_carries_admin_group(self, service: AuthService) -> None:
        await service.register("admin", "admin@example.com", "admin123", groups=["Admin"])
        result = await service.authenticate("admin", "admin123")
        assert result.status == "success"
        assert result.state is LoginState.AUTHENTICATED
        assert result.claims.groups == frozenset({"Admin"})
        assert service.verify_token(result.token).subject == "admin"

    @pytest.mark.asyncio
    async def test_user_without_groups_gets_empty_claim(self, service: AuthService) -> None:
        await service.register("loner", "loner@example.com", "password1", groups=[])
        result = await service.authenticate("loner", "password1")
        assert result.succeeded
        assert result.claims.groups == frozenset()

    @pytest.mark.asyncio
    async def test_default_group_on_register(self, service: AuthService) -> None:
        await service.register("carol", "carol@example.com", "password1")
        result = await service.authenticate("carol", "password1")
        assert result.claims.groups == frozenset({"User"})

    @pytest.mark.asyncio
    async def test_rejections_are_indistinguishable(self, service: AuthService) -> None:
        await service.register("alice", "alice@example.com", "password1")
        await service.register("dave", "dave@example.com", "password1")
        await service.directory.set_user_status("dave", PrincipalStatus.DISABLED)

        errors: list[AuthError] = []
        for username, password in (("alice", "wrong-pass"), ("nobody", "password1"), ("dave", "password1")):
            with pytest.raises(InvalidCredentials) as exc_info:
                await service.authenticate(username, password)
            errors.append(exc_info.value)
        assert {(e.status_code, e.error_code, e.client_message) for e in errors} == {
            (401, "authentication_failed", "Authentication failed.")
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("username,password", [("", "x"), ("alice", ""), ("", "")])
    async def test_empty_input_is_invalid_request(self, service: AuthService, username: str, password: str) -> None:
        with pytest.raises(InvalidRequest):
            await service.authenticate(username, password)


class TestTotpChallenge:
    @pytest.mark.asyncio
    async def test_mfa_user_gets_challenge_then_token(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1", groups=["Moderator"])
        secret = await _enable_mfa(service, "mfa")

        first = await service.authenticate("mfa", "password1")
        assert first.status == "challenge"
        assert first.state is LoginState.AWAITING_CHALLENGE
        assert first.challenge.kind is ChallengeKind.TOTP
        assert first.token is None

        second = await service.respond_to_challenge("mfa", first.challenge.session_token, pyotp.TOTP(secret).now())
        assert second.succeeded
        assert second.claims.groups == frozenset({"Moderator"})

    @pytest.mark.asyncio
    async def test_wrong_code_fails_and_spends_session(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1")
        secret = await _enable_mfa(service, "mfa")
        session = (await service.authenticate("mfa", "password1")).challenge.session_token

        with pytest.raises(ChallengeVerificationFailed):
            await service.respond_to_challenge("mfa", session, _wrong_code(secret))
        # The correct code cannot revive a spent session.
        with pytest.raises(ChallengeVerificationFailed):
            await service.respond_to_challenge("mfa", session, pyotp.TOTP(secret).now())

    @pytest.mark.asyncio
    async def test_replayed_session_is_rejected(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1")
        secret = await _enable_mfa(service, "mfa")
        session = (await service.authenticate("mfa", "password1")).challenge.session_token

        code = pyotp.TOTP(secret).now()
        assert (await service.respond_to_challenge("mfa", session, code)).succeeded
        with pytest.raises(ChallengeVerificationFailed):
            await service.respond_to_challenge("mfa", session, code)

    @pytest.mark.asyncio
    async def test_concurrent_answers_redeem_session_once(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1")
        secret = await _enable_mfa(service, "mfa")
        session = (await service.authenticate("mfa", "password1")).challenge.session_token

        code = pyotp.TOTP(secret).now()
        results = await asyncio.gather(
            *(service.respond_to_challenge("mfa", session, code) for _ in range(8)),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert successes[0].succeeded
        assert len(failures) == 7
        assert all(isinstance(f, ChallengeVerificationFailed) for f in failures)

    @pytest.mark.asyncio
    async def test_session_is_bound_to_its_user(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1")
        await service.register("eve", "eve@example.com", "password1", groups=["Admin"])
        secret = await _enable_mfa(service, "mfa")
        session = (await service.authenticate("mfa", "password1")).challenge.session_token

        with pytest.raises(ChallengeVerificationFailed):
            await service.respond_to_challenge("eve", session, pyotp.TOTP(secret).now())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["12345", "1234567", "12ab56", " 123456"])
    async def test_code_format_checked_before_directory(self, service: AuthService, code: str) -> None:
        with pytest.raises(InvalidRequest):
            await service.respond_to_challenge("mfa", "some-session", code)

    @pytest.mark.asyncio
    async def test_unknown_kind_is_invalid_request(self, service: AuthService) -> None:
        with pytest.raises(InvalidRequest):
            await service.respond_to_challenge("mfa", "some-session", "123456", "carrier-pigeon")

    @pytest.mark.asyncio
    async def test_answer_with_wrong_kind_fails(self, service: AuthService) -> None:
        await service.register("mfa", "mfa@example.com", "password1")
        await _enable_mfa(service, "mfa")
        session = (await service.authenticate("mfa", "password1")).challenge.session_token
        with pytest.raises(ChallengeVerificationFailed):
            await service.respond_to_challenge("mfa", session, "new-password-1", ChallengeKind.PASSWORD_RESET_REQUIRED)


class TestPasswordResetChallenge:
    @pytest.mark.asyncio
    async def test_temporary_password_must_be_replaced(self, service: AuthService) -> None:
        await service.register("temp", "temp@example.com", "temporary1", temporary=True)

        first = await service.authenticate("temp", "temporary1")
        assert first.challenge.kind is ChallengeKind.PASSWORD_RESET_REQUIRED

        second = await service.respond_to_challenge(
            "temp", first.challenge.session_token, "brand-new-pass", ChallengeKind.PASSWORD_RESET_REQUIRED
        )
        assert second.succeeded
        assert second.claims.groups == frozenset({"User"})
        assert (await service.get_profile("temp")).status is PrincipalStatus.ACTIVE

        with pytest.raises(InvalidCredentials):
            await service.authenticate("temp", "temporary1")
        assert (await service.authenticate("temp", "brand-new-pass")).succeeded

    @pytest.mark.asyncio
    async def test_short_new_password_is_invalid_request(self, service: AuthService) -> None:
        with pytest.raises(InvalidRequest):
            await service.respond_to_challenge("temp", "session", "short", ChallengeKind.PASSWORD_RESET_REQUIRED)

    @pytest.mark.asyncio
    async def test_reset_chains_into_totp(self, service: AuthService) -> None:
        await service.register("chain", "chain@example.com", "temporary1", temporary=True, groups=["Admin"])
        secret = await _enable_mfa(service, "chain")

        first = await service.authenticate("chain", "temporary1")
        assert first.challenge.kind is ChallengeKind.PASSWORD_RESET_REQUIRED

        second = await service.respond_to_challenge(
            "chain", first.challenge.session_token, "brand-new-pass", ChallengeKind.PASSWORD_RESET_REQUIRED
        )
        assert second.status == "challenge"
        assert second.challenge.kind is ChallengeKind.TOTP
        assert second.challenge.session_token != first.challenge.session_token

        third = await service.respond_to_challenge(
            "chain", second.challenge.session_token, pyotp.TOTP(secret).now(), ChallengeKind.TOTP
        )
        assert third.succeeded
        assert third.claims.groups == frozenset({"Admin"})


class TestChallengeExpiry:
    @pytest.mark.asyncio
    async def test_expired_session_is_rejected(self, tmp_path, tokens, clock) -> None:
        directory = LocalDirectory(f"sqlite:///{tmp_path / 'expiry.db'}", challenge_ttl_seconds=180, clock=clock)
        service = AuthService(directory, DirectoryGroupStore(directory, KNOWN), tokens)
        try:
            await service.register("temp", "temp@example.com", "temporary1", temporary=True)
            session = (await service.authenticate("temp", "temporary1")).challenge.session_token
            clock.advance(181)
            with pytest.raises(ChallengeVerificationFailed):
                await service.respond_to_challenge(
                    "temp", session, "brand-new-pass", ChallengeKind.PASSWORD_RESET_REQUIRED
                )
        finally:
            directory.close()

    @pytest.mark.asyncio
    async def test_session_valid_until_its_expiry(self, tmp_path, tokens, clock) -> None:
        directory = LocalDirectory(f"sqlite:///{tmp_path / 'expiry.db'}", challenge_ttl_seconds=180, clock=clock)
        service = AuthService(directory, DirectoryGroupStore(directory, KNOWN), tokens)
        try:
            await service.register("temp", "temp@example.com", "temporary1", temporary=True)
            session = (await service.authenticate("temp", "temporary1")).challenge.session_token
            clock.advance(180)
            result = await service.respond_to_challenge(
                "temp", session, "brand-new-pass", ChallengeKind.PASSWORD_RESET_REQUIRED
            )
            assert result.succeeded
        finally:
            directory.close()


class TestGroupFreshness:
    @pytest.mark.asyncio
    async def test_token_is_a_snapshot_new_login_sees_change(self, service: AuthService) -> None:
        await service.register("alice", "alice@example.com", "password1", groups=["User"])
        old = await service.authenticate("alice", "password1")

        await service.add_user_to_group("alice", "Moderator")
        assert service.verify_token(old.token).groups == frozenset({"User"})

        new = await service.authenticate("alice", "password1")
        assert new.claims.groups == frozenset({"Moderator", "User"})


class TestLoginAttempt:
    def test_happy_path_history(self) -> None:
        attempt = LoginAttempt("alice")
        attempt.advance(LoginState.AWAITING_PRIMARY)
        attempt.advance(LoginState.AUTHENTICATED)
        assert attempt.terminal
        assert attempt.history == [LoginState.INIT, LoginState.AWAITING_PRIMARY, LoginState.AUTHENTICATED]

    def test_cannot_skip_primary(self) -> None:
        with pytest.raises(RuntimeError):
            LoginAttempt("alice").advance(LoginState.AUTHENTICATED)

    @pytest.mark.parametrize("terminal", [LoginState.AUTHENTICATED, LoginState.FAILED])
    def test_terminal_states_are_final(self, terminal: LoginState) -> None:
        attempt = LoginAttempt("alice")
        attempt.advance(LoginState.AWAITING_PRIMARY)
        attempt.advance(terminal)
        with pytest.raises(RuntimeError):
            attempt.advance(LoginState.AWAITING_CHALLENGE)
