"""
auth/service.py -- Orchestration facade for the auth core.

AuthService is the inbound interface the rest of the system (the HTTP routes,
the admin CLI) talks to. It composes the directory, the group store, the
token service, the challenge flow, the guard and MFA enrollment, and it is
the one place that logs login transitions.

Logging rules:
  Log outcome + username for every login transition.
  Never log passwords, OTP codes, MFA secrets, challenge session tokens or
  issued tokens.
  Transient provider failures at WARNING, rejections at INFO.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.challenge import ChallengeFlow
from auth.directory import CredentialDirectory
from auth.errors import AuthError, InvalidRequest, ProviderUnavailable
from auth.groups import GroupMembershipStore
from auth.guard import AuthorizationGuard
from auth.mfa import EnrollmentStart, MfaEnrollmentService
from auth.models import (
    ChallengeKind,
    Claims,
    GroupDecision,
    LoginResult,
    MfaEnrollment,
    Principal,
    PrincipalAttributes,
    PrincipalStatus,
)
from auth.tokens import TokenService

logger = logging.getLogger("authgate.auth.service")


class AuthService:
    def __init__(
        self,
        directory: CredentialDirectory,
        groups: GroupMembershipStore,
        tokens: TokenService,
        default_group: str | None = None,
    ) -> None:
        self.directory = directory
        self.groups = groups
        self.tokens = tokens
        self.flow = ChallengeFlow(directory, groups, tokens)
        self.guard = AuthorizationGuard(tokens, groups)
        self.mfa = MfaEnrollmentService(directory)
        if default_group is not None and default_group not in groups.known_groups:
            raise ValueError(f"Default group {default_group!r} is not a known group.")
        self.default_group = default_group

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def authenticate(self, username: str, password: str) -> LoginResult:
        try:
            result = await self.flow.authenticate(username, password)
        except ProviderUnavailable:
            logger.warning("Login for %r: provider unavailable", username)
            raise
        except AuthError as exc:
            logger.info("Login for %r: failed (%s)", username, exc.error_code)
            raise
        self._log_result("Login", result)
        return result

    async def respond_to_challenge(
        self,
        username: str,
        session_token: str,
        code: str,
        kind: ChallengeKind | str = ChallengeKind.TOTP,
    ) -> LoginResult:
        try:
            result = await self.flow.respond_to_challenge(username, session_token, code, kind)
        except ProviderUnavailable:
            logger.warning("Challenge response for %r: provider unavailable", username)
            raise
        except AuthError as exc:
            logger.info("Challenge response for %r: failed (%s)", username, exc.error_code)
            raise
        self._log_result("Challenge response", result)
        return result

    @staticmethod
    def _log_result(step: str, result: LoginResult) -> None:
        if result.status == "challenge":
            logger.info("%s for %r: challenge %s issued", step, result.username, result.challenge.kind.value)
        else:
            logger.info(
                "%s for %r: authenticated (groups=%s)",
                step,
                result.username,
                ",".join(sorted(result.claims.groups)) or "-",
            )

    # ------------------------------------------------------------------
    # Tokens and authorization
    # ------------------------------------------------------------------

    def verify_token(self, token: str) -> Claims:
        return self.tokens.verify(token)

    async def require_group(self, claims: Claims, groups: str | Iterable[str]) -> GroupDecision:
        try:
            return await self.guard.require_group(claims, groups)
        except AuthError as exc:
            logger.info("Authorization for %r denied (%s)", claims.subject, exc.error_code)
            raise

    # ------------------------------------------------------------------
    # Registration and profile
    # ------------------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        attributes: PrincipalAttributes | None = None,
        *,
        temporary: bool = False,
        groups: Iterable[str] | None = None,
    ) -> Principal:
        """Create a principal and place it in groups (default_group when None)."""
        if not username or not password:
            raise InvalidRequest("Username and password are required.")
        initial = list(groups) if groups is not None else ([self.default_group] if self.default_group else [])
        for group in initial:
            self.groups.check_group(group)
        principal = await self.directory.create_user(username, email, password, attributes, temporary=temporary)
        for group in initial:
            await self.groups.add_to_group(username, group)
        logger.info("Registered %r (groups=%s)", username, ",".join(initial) or "-")
        return principal

    async def get_profile(self, username: str) -> Principal:
        return await self.directory.get_user(username)

    async def update_profile(self, username: str, attributes: PrincipalAttributes) -> Principal:
        principal = await self.directory.update_user_attributes(username, attributes)
        logger.info("Profile updated for %r", username)
        return principal

    async def list_users(self, limit: int = 50, offset: int = 0) -> list[Principal]:
        return await self.directory.list_users(limit, offset)

    async def set_user_role(self, username: str, role: str, status: PrincipalStatus | None = None) -> list[str]:
        """Replace every group the principal holds with the single group role.

        Optionally also changes the account status (active/disabled).
        """
        self.groups.check_group(role)
        await self.directory.get_user(username)
        for group in await self.groups.get_groups(username):
            if group != role:
                await self.groups.remove_from_group(username, group)
        await self.groups.add_to_group(username, role)
        if status is not None:
            await self.directory.set_user_status(username, status)
        logger.info("Role for %r set to %s", username, role)
        return await self.groups.list_groups_for_principal(username)

    # ------------------------------------------------------------------
    # Group administration
    # ------------------------------------------------------------------

    async def add_user_to_group(self, username: str, group: str) -> list[str]:
        await self.directory.get_user(username)
        await self.groups.add_to_group(username, group)
        logger.info("Added %r to group %s", username, group)
        return await self.groups.list_groups_for_principal(username)

    async def remove_user_from_group(self, username: str, group: str) -> list[str]:
        await self.directory.get_user(username)
        await self.groups.remove_from_group(username, group)
        logger.info("Removed %r from group %s", username, group)
        return await self.groups.list_groups_for_principal(username)

    async def list_groups_for_principal(self, username: str) -> list[str]:
        return await self.groups.list_groups_for_principal(username)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    async def mfa_status(self, username: str) -> MfaEnrollment:
        return await self.mfa.status(username)

    async def begin_mfa_enrollment(self, username: str) -> EnrollmentStart:
        start = await self.mfa.begin_enrollment(username)
        logger.info("MFA enrollment started for %r", username)
        return start

    async def confirm_mfa_enrollment(self, username: str, code: str, secret: str) -> MfaEnrollment:
        try:
            enrollment = await self.mfa.confirm_enrollment(username, code, secret)
        except AuthError as exc:
            logger.info("MFA enrollment confirmation for %r failed (%s)", username, exc.error_code)
            raise
        logger.info("MFA enabled for %r", username)
        return enrollment

    async def disable_mfa(self, username: str, code: str) -> MfaEnrollment:
        try:
            enrollment = await self.mfa.disable(username, code)
        except AuthError as exc:
            logger.info("MFA disable for %r failed (%s)", username, exc.error_code)
            raise
        logger.info("MFA disabled for %r", username)
        return enrollment
