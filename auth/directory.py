"""
auth/directory.py -- Credential Directory Adapter contract.

The identity provider (user directory, password storage, MFA secret custody)
is an external collaborator. Everything the core needs from it goes through
CredentialDirectory. Implementations:

  auth.local_directory.LocalDirectory -- SQLAlchemy-backed, in-process.
  Any hosted identity provider, adapted to the same async contract.

Error contract for implementations:
  Business-rule rejections raise the matching AuthError subclass
  (InvalidCredentials, ChallengeVerificationFailed, DuplicateUsername,
  UserNotFound, CodeMismatch). Infrastructure failures raise
  ProviderUnavailable or let OSError/ConnectionError escape -- BoundedDirectory
  turns those into ProviderUnavailable. The two must never be conflated.

BoundedDirectory wraps any implementation so no call can hang the caller:
every method runs under asyncio.wait_for with one configured timeout.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from auth.errors import ProviderUnavailable
from auth.models import (
    ChallengeIssued,
    ChallengeKind,
    MfaEnrollment,
    Principal,
    PrincipalAttributes,
    PrincipalStatus,
    SoftwareTokenAssociation,
)

logger = logging.getLogger("authgate.auth.directory")

T = TypeVar("T")


class CredentialDirectory(abc.ABC):
    """Async contract every identity provider adapter implements."""

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        attributes: PrincipalAttributes | None = None,
        *,
        temporary: bool = False,
    ) -> Principal:
        """Create a principal. temporary=True forces a password reset on first login.

        Raises DuplicateUsername if the username is taken.
        """

    @abc.abstractmethod
    async def get_user(self, username: str) -> Principal:
        """Raises UserNotFound."""

    @abc.abstractmethod
    async def list_users(self, limit: int = 50, offset: int = 0) -> list[Principal]: ...

    @abc.abstractmethod
    async def update_user_attributes(self, username: str, attributes: PrincipalAttributes) -> Principal: ...

    @abc.abstractmethod
    async def set_user_status(self, username: str, status: PrincipalStatus) -> Principal: ...

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def verify_password(self, username: str, password: str) -> Principal | ChallengeIssued:
        """Primary verification.

        Returns the Principal when the login is complete, or ChallengeIssued
        when another step is required. Raises InvalidCredentials without
        saying whether the user exists.
        """

    @abc.abstractmethod
    async def respond_to_challenge(
        self,
        username: str,
        session_token: str,
        kind: ChallengeKind,
        response: str,
    ) -> Principal | ChallengeIssued:
        """Consume a challenge session exactly once.

        The session is spent whatever the outcome. Raises
        ChallengeVerificationFailed on a wrong response, unknown, expired or
        already-consumed session, or a kind/username mismatch.
        """

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def list_groups_for_user(self, username: str) -> list[str]: ...

    @abc.abstractmethod
    async def add_user_to_group(self, username: str, group: str) -> None:
        """Idempotent: adding an already-held group succeeds silently."""

    @abc.abstractmethod
    async def remove_user_from_group(self, username: str, group: str) -> None:
        """Idempotent: removing a group not held succeeds silently."""

    # ------------------------------------------------------------------
    # MFA (software token / TOTP)
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_mfa_enrollment(self, username: str) -> MfaEnrollment: ...

    @abc.abstractmethod
    async def begin_software_token_association(self, username: str) -> SoftwareTokenAssociation: ...

    @abc.abstractmethod
    async def verify_software_token(self, username: str, code: str, secret: str | None = None) -> None:
        """Check a TOTP code. With secret: against the pending enrollment secret.

        Raises CodeMismatch.
        """

    @abc.abstractmethod
    async def set_mfa_preference(self, username: str, enabled: bool, secret: str | None = None) -> MfaEnrollment:
        """Enable or disable MFA.

        Enabling commits exactly the secret the caller verified, and only while it
        is still the pending one; otherwise CodeMismatch and nothing changes.
        Disabling discards every secret.
        """

    def close(self) -> None:  # noqa: B027 -- optional hook
        """Release resources. Adapters without resources keep the no-op."""


class BoundedDirectory(CredentialDirectory):
    """Decorator that puts a single timeout on every call of the wrapped directory.

    asyncio.TimeoutError, ConnectionError and OSError become ProviderUnavailable;
    AuthError subclasses pass through untouched.
    """

    def __init__(self, inner: CredentialDirectory, timeout: float) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.inner = inner
        self.timeout = timeout

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Directory call %s timed out after %.1fs", operation, self.timeout)
            raise ProviderUnavailable(f"Directory call {operation} timed out.") from exc
        except (ConnectionError, OSError) as exc:
            logger.warning("Directory call %s failed: %s", operation, exc.__class__.__name__)
            raise ProviderUnavailable(f"Directory call {operation} failed.") from exc

    async def create_user(self, username, email, password, attributes=None, *, temporary=False):
        return await self._bounded(
            "create_user",
            self.inner.create_user(username, email, password, attributes, temporary=temporary),
        )

    async def get_user(self, username):
        return await self._bounded("get_user", self.inner.get_user(username))

    async def list_users(self, limit=50, offset=0):
        return await self._bounded("list_users", self.inner.list_users(limit, offset))

    async def update_user_attributes(self, username, attributes):
        return await self._bounded("update_user_attributes", self.inner.update_user_attributes(username, attributes))

    async def set_user_status(self, username, status):
        return await self._bounded("set_user_status", self.inner.set_user_status(username, status))

    async def verify_password(self, username, password):
        return await self._bounded("verify_password", self.inner.verify_password(username, password))

    async def respond_to_challenge(self, username, session_token, kind, response):
        return await self._bounded(
            "respond_to_challenge",
            self.inner.respond_to_challenge(username, session_token, kind, response),
        )

    async def list_groups_for_user(self, username):
        return await self._bounded("list_groups_for_user", self.inner.list_groups_for_user(username))

    async def add_user_to_group(self, username, group):
        return await self._bounded("add_user_to_group", self.inner.add_user_to_group(username, group))

    async def remove_user_from_group(self, username, group):
        return await self._bounded("remove_user_from_group", self.inner.remove_user_from_group(username, group))

    async def get_mfa_enrollment(self, username):
        return await self._bounded("get_mfa_enrollment", self.inner.get_mfa_enrollment(username))

    async def begin_software_token_association(self, username):
        return await self._bounded(
            "begin_software_token_association",
            self.inner.begin_software_token_association(username),
        )

    async def verify_software_token(self, username, code, secret=None):
        return await self._bounded("verify_software_token", self.inner.verify_software_token(username, code, secret))

    async def set_mfa_preference(self, username, enabled, secret=None):
        return await self._bounded("set_mfa_preference", self.inner.set_mfa_preference(username, enabled, secret))

    def close(self) -> None:
        self.inner.close()
