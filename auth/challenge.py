"""
auth/challenge.py -- Login challenge state machine.

A login attempt moves through:

    INIT -> AWAITING_PRIMARY -> AUTHENTICATED
                             -> AWAITING_CHALLENGE -> AUTHENTICATED
                                                   -> AWAITING_CHALLENGE (chained step)
                                                   -> FAILED
                             -> FAILED

The flow is stateless between HTTP requests. The only state carried from
authenticate() to respond_to_challenge() is the provider-issued session token
inside ChallengeSession, which the client sends back. Single-use enforcement
of that token belongs to the directory.

Every token-issuing transition re-reads the principal's groups from the
configured GroupMembershipStore. A token is never minted with an empty or
caller-supplied group claim after a challenge.

This module does not log. The orchestration layer (auth/service.py) logs the
outcome of each attempt.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re

from auth.directory import CredentialDirectory
from auth.errors import ChallengeVerificationFailed, InvalidCredentials, InvalidRequest
from auth.groups import GroupMembershipStore
from auth.models import ChallengeIssued, ChallengeKind, LoginResult, LoginState, Principal
from auth.tokens import TokenService

OTP_CODE_PATTERN = re.compile(r"^\d{6}$")
NEW_PASSWORD_MIN_LENGTH = 8
NEW_PASSWORD_MAX_LENGTH = 256

_TRANSITIONS: dict[LoginState, frozenset[LoginState]] = {
    LoginState.INIT: frozenset({LoginState.AWAITING_PRIMARY, LoginState.AWAITING_CHALLENGE}),
    LoginState.AWAITING_PRIMARY: frozenset(
        {LoginState.AUTHENTICATED, LoginState.AWAITING_CHALLENGE, LoginState.FAILED}
    ),
    LoginState.AWAITING_CHALLENGE: frozenset(
        {LoginState.AUTHENTICATED, LoginState.AWAITING_CHALLENGE, LoginState.FAILED}
    ),
    LoginState.AUTHENTICATED: frozenset(),
    LoginState.FAILED: frozenset(),
}


class LoginAttempt:
    """Tracks the state of one login attempt and rejects illegal transitions.

    An attempt resumed from a challenge starts at INIT and moves straight to
    AWAITING_CHALLENGE.
    """

    def __init__(self, username: str) -> None:
        self.username = username
        self.state = LoginState.INIT
        self.history: list[LoginState] = [LoginState.INIT]

    def advance(self, new_state: LoginState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal login transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def terminal(self) -> bool:
        return self.state in (LoginState.AUTHENTICATED, LoginState.FAILED)


def _require_text(name: str, value) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidRequest(f"{name} is required.")
    return value


def validate_challenge_response(kind: ChallengeKind, code: str) -> None:
    """Check the response has the shape the challenge kind expects.

    totp / sms-otp: exactly six ASCII digits.
    password-reset-required: the new password, 8-256 characters.
    """
    if kind in (ChallengeKind.TOTP, ChallengeKind.SMS_OTP):
        if not OTP_CODE_PATTERN.match(code):
            raise InvalidRequest("Verification code must be 6 digits.")
    elif kind is ChallengeKind.PASSWORD_RESET_REQUIRED:
        if not NEW_PASSWORD_MIN_LENGTH <= len(code) <= NEW_PASSWORD_MAX_LENGTH:
            raise InvalidRequest(
                f"New password must be {NEW_PASSWORD_MIN_LENGTH}-{NEW_PASSWORD_MAX_LENGTH} characters."
            )


class ChallengeFlow:
    """Drives login attempts against a directory and issues session tokens.

    Usage:
        flow = ChallengeFlow(directory, group_store, tokens)
        result = await flow.authenticate("alice", "s3cret!!")
        if result.status == "challenge":
            result = await flow.respond_to_challenge(
                "alice", result.challenge.session_token, "123456", result.challenge.kind
            )

    ProviderUnavailable from the directory or the group store is not caught:
    it reaches the caller as a retryable failure and the attempt is left
    non-terminal. Credentials are never cached for a retry.
    """

    def __init__(
        self,
        directory: CredentialDirectory,
        groups: GroupMembershipStore,
        tokens: TokenService,
    ) -> None:
        self.directory = directory
        self.groups = groups
        self.tokens = tokens

    async def _complete(self, attempt: LoginAttempt, principal: Principal) -> LoginResult:
        """Issue a token carrying the authoritative group set at this instant."""
        groups = await self.groups.get_groups(principal.username)
        token = self.tokens.issue(principal.username, groups)
        claims = self.tokens.verify(token)
        attempt.advance(LoginState.AUTHENTICATED)
        return LoginResult(
            status="success",
            state=attempt.state,
            username=principal.username,
            token=token,
            claims=claims,
        )

    def _challenge(self, attempt: LoginAttempt, issued: ChallengeIssued) -> LoginResult:
        attempt.advance(LoginState.AWAITING_CHALLENGE)
        return LoginResult(
            status="challenge",
            state=attempt.state,
            username=attempt.username,
            challenge=issued.session,
        )

    async def authenticate(self, username: str, password: str) -> LoginResult:
        """Primary password verification.

        Returns a success result with a token, or a challenge result carrying
        the ChallengeSession. Raises InvalidCredentials on rejection (unknown
        user and wrong password look the same) and InvalidRequest on empty
        input.
        """
        _require_text("username", username)
        _require_text("password", password)

        attempt = LoginAttempt(username)
        attempt.advance(LoginState.AWAITING_PRIMARY)
        try:
            outcome = await self.directory.verify_password(username, password)
        except InvalidCredentials:
            attempt.advance(LoginState.FAILED)
            raise

        if isinstance(outcome, ChallengeIssued):
            return self._challenge(attempt, outcome)
        return await self._complete(attempt, outcome)

    async def respond_to_challenge(
        self,
        username: str,
        session_token: str,
        code: str,
        kind: ChallengeKind = ChallengeKind.TOTP,
    ) -> LoginResult:
        """Answer a pending challenge.

        The session is spent by the directory whatever the outcome, so a
        replay of a consumed session fails with ChallengeVerificationFailed.
        A directory may answer with another challenge (e.g. a password reset
        followed by TOTP); that comes back as a fresh challenge result.
        """
        _require_text("username", username)
        _require_text("session", session_token)
        _require_text("code", code)
        try:
            kind = ChallengeKind(kind)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown challenge kind {kind!r}.") from exc
        validate_challenge_response(kind, code)

        attempt = LoginAttempt(username)
        attempt.advance(LoginState.AWAITING_CHALLENGE)
        try:
            outcome = await self.directory.respond_to_challenge(username, session_token, kind, code)
        except ChallengeVerificationFailed:
            attempt.advance(LoginState.FAILED)
            raise

        if isinstance(outcome, ChallengeIssued):
            return self._challenge(attempt, outcome)
        if outcome.username != username:
            # A directory must never complete a login for someone else.
            attempt.advance(LoginState.FAILED)
            raise ChallengeVerificationFailed("Directory returned a different principal.")
        return await self._complete(attempt, outcome)
