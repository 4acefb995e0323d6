"""
auth/tokens.py -- Session token issuing/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry the
       subject (username), the group snapshot, issued-at, expiry and a random
       jti. The group claim is a snapshot: removing a user from a group does
       not invalidate tokens already issued, within the TTL.

  Verification raises a specific TokenError subclass instead of returning None
       so the guard can tell malformed, forged, expired and subject-less
       tokens apart. The checks run in a fixed order: structure first, then
       signature, then claims. Expiry is only evaluated on tokens whose
       signature is valid.

  Expiry: a token is accepted through its exp instant and rejected from the
       next second on. There is no clock-skew leeway. Nodes with drifting
       clocks will disagree about tokens near expiry -- a known limitation.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization for unknown usernames [C1].

  SECRET_KEY: loaded once at startup by the caller (api/main.py) and passed
       into TokenService. It is never rotated mid-process.

Layer rule: no imports from api/. core/ is not imported here either --
configuration is injected by whoever builds the TokenService.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import SignatureInvalid, SubjectMissing, TokenExpired, TokenMalformed
from auth.models import Claims

logger = logging.getLogger("authgate.auth.tokens")

ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 24 * 3600

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    256 characters; long multibyte passwords are still truncated by bcrypt.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in storage
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("authgate_timing_dummy")


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Mints and validates signed, expiring claims tokens.

    Usage:
        tokens = TokenService(settings.secret_key, ttl_seconds=settings.token_ttl_seconds)
        raw = tokens.issue("alice", {"User"})
        claims = tokens.verify(raw)

    clock is injectable so tests can move time without sleeping.
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a signing key.")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, subject: str, groups: Iterable[str], ttl: int | timedelta | None = None) -> str:
        """Encode a signed JWT for subject with the given group snapshot.

        ttl may be seconds or a timedelta; it defaults to the service TTL.
        Groups are stored sorted and deduplicated -- order carries no meaning.
        """
        if not subject:
            raise ValueError("Token subject must be a non-empty string.")
        if ttl is None:
            seconds = self.ttl_seconds
        elif isinstance(ttl, timedelta):
            seconds = int(ttl.total_seconds())
        else:
            seconds = int(ttl)
        if seconds <= 0:
            raise ValueError("Token ttl must be positive.")

        issued_at = int(self._clock().timestamp())
        payload = {
            "sub": subject,
            "groups": sorted(set(groups)),
            "iat": issued_at,
            "exp": issued_at + seconds,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: str) -> Claims:
        """Decode and verify a token, returning its Claims.

        Raises:
            TokenMalformed:   not a JWT, or required claims have the wrong shape.
            SignatureInvalid: signature or algorithm does not match.
            TokenExpired:     current time is past exp.
            SubjectMissing:   no usable sub claim.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed("Token is not a compact JWS.")
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed("Token could not be parsed.") from exc

        try:
            # Expiry and subject are checked below against our own clock and
            # rules; jose only verifies the signature and algorithm here.
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_sub": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as exc:
            raise SignatureInvalid("Token signature verification failed.") from exc

        exp = payload.get("exp")
        iat = payload.get("iat")
        if not _is_timestamp(exp) or not _is_timestamp(iat):
            raise TokenMalformed("Token lacks a valid exp/iat claim.")

        now = self._clock().timestamp()
        if now > exp:
            raise TokenExpired("Token has expired.")

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise SubjectMissing("Token has no subject claim.")

        groups = payload.get("groups", [])
        if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
            raise TokenMalformed("Token groups claim must be a list of strings.")

        return Claims(
            subject=subject,
            groups=frozenset(groups),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=payload.get("jti"),
        )


def _is_timestamp(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
