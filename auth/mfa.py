"""
auth/mfa.py -- TOTP enrollment state machine.

    DISABLED -> PENDING_VERIFICATION -> ENABLED -> DISABLED

  begin_enrollment   -- allocate a secret + otpauth:// URI. Refused when MFA
                        is already enabled; restarting from PENDING simply
                        replaces the pending secret.
  confirm_enrollment -- the user proves the authenticator app works by
                        submitting a code for the pending secret. A wrong code
                        leaves the enrollment pending so they can retry.
  disable            -- requires a currently valid code, so a hijacked session
                        alone cannot silently downgrade the account.

Secret custody stays with the directory. The secret leaves this module only
once, inside EnrollmentStart, so the client can render the QR code.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.challenge import OTP_CODE_PATTERN
from auth.directory import CredentialDirectory
from auth.errors import CodeMismatch, MfaAlreadyEnabled, MfaStateError
from auth.models import MfaEnrollment, MfaState


@dataclass(frozen=True)
class EnrollmentStart:
    secret: str
    provisioning_uri: str
    state: MfaState = MfaState.PENDING_VERIFICATION


def _check_code(code: str) -> None:
    if not isinstance(code, str) or not OTP_CODE_PATTERN.match(code):
        raise CodeMismatch("MFA code must be 6 digits.")


class MfaEnrollmentService:
    """Enrollment transitions on top of the directory's software-token calls."""

    def __init__(self, directory: CredentialDirectory) -> None:
        self.directory = directory

    async def status(self, username: str) -> MfaEnrollment:
        return await self.directory.get_mfa_enrollment(username)

    async def begin_enrollment(self, username: str) -> EnrollmentStart:
        current = await self.directory.get_mfa_enrollment(username)
        if current.state is MfaState.ENABLED:
            raise MfaAlreadyEnabled(current.state)
        association = await self.directory.begin_software_token_association(username)
        return EnrollmentStart(secret=association.secret, provisioning_uri=association.provisioning_uri)

    async def confirm_enrollment(self, username: str, code: str, secret: str) -> MfaEnrollment:
        current = await self.directory.get_mfa_enrollment(username)
        if current.state is MfaState.ENABLED:
            raise MfaAlreadyEnabled(current.state)
        if current.state is not MfaState.PENDING_VERIFICATION:
            raise MfaStateError("No MFA enrollment is pending. Start enrollment first.", current.state)
        if not secret:
            raise CodeMismatch("Enrollment secret is required.")
        _check_code(code)
        await self.directory.verify_software_token(username, code, secret)
        return await self.directory.set_mfa_preference(username, True, secret)

    async def disable(self, username: str, code: str) -> MfaEnrollment:
        current = await self.directory.get_mfa_enrollment(username)
        if current.state is not MfaState.ENABLED:
            raise MfaStateError("MFA is not enabled.", current.state)
        _check_code(code)
        await self.directory.verify_software_token(username, code)
        return await self.directory.set_mfa_preference(username, False)
