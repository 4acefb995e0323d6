"""
auth/local_directory.py -- SQLAlchemy Core implementation of CredentialDirectory.

Pattern: Repository + Data Mapper. LocalDirectory is the repository;
_row_to_principal is the mapper. Nothing outside this module touches SQL.

Used for development, tests and single-node deployments that do not sit in
front of a hosted identity provider. It behaves like one from the core's
point of view:

  - bcrypt password hashes, with timing equalization for unknown users [C1].
  - Users created with a temporary password must pass a
    password-reset-required challenge on first login.
  - Users with MFA enabled must pass a totp challenge after the password.
  - Challenge sessions are random 256-bit tokens stored with an expiry and
    consumed by a conditional UPDATE, so two concurrent responses for the same
    session cannot both succeed.
  - TOTP secrets are generated and checked with pyotp.

All SQLAlchemy work is synchronous; the async CredentialDirectory methods
push it to a worker thread with asyncio.to_thread so the event loop never
blocks on the database.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

import pyotp
from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.directory import CredentialDirectory
from auth.errors import (
    ChallengeVerificationFailed,
    CodeMismatch,
    DuplicateUsername,
    InvalidCredentials,
    MfaStateError,
    UserNotFound,
)
from auth.models import (
    ChallengeIssued,
    ChallengeKind,
    ChallengeSession,
    MfaEnrollment,
    MfaState,
    Principal,
    PrincipalAttributes,
    PrincipalStatus,
    SoftwareTokenAssociation,
)
from auth.tokens import DUMMY_HASH, hash_password, utc_now, verify_password

logger = logging.getLogger("authgate.auth.local_directory")

DEFAULT_CHALLENGE_TTL_SECONDS = 180
# One 30s step either side of now, for authenticator apps with a slightly
# drifting clock.
TOTP_VALID_WINDOW = 1

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("username", String(128), primary_key=True),
    Column("email", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text, nullable=False),
    Column("status", String(16), nullable=False, server_default=PrincipalStatus.ACTIVE.value),
    Column("given_name", String(255), nullable=False, server_default=""),
    Column("family_name", String(255), nullable=False, server_default=""),
    Column("extra", Text, nullable=False, server_default="{}"),  # JSON object of str -> str
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_preferred", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),  # committed TOTP secret; NULL unless enabled
    Column("mfa_pending_secret", Text),  # allocated by enrollment, not yet verified
)

_user_groups = Table(
    "user_groups",
    _metadata,
    Column("username", String(128), nullable=False),
    Column("group_name", String(64), nullable=False),
    PrimaryKeyConstraint("username", "group_name"),
)

_challenge_sessions = Table(
    "challenge_sessions",
    _metadata,
    Column("session_token", String(64), primary_key=True),
    Column("username", String(128), nullable=False),
    Column("kind", String(32), nullable=False),
    Column("created_at", Float, nullable=False),  # epoch seconds
    Column("expires_at", Float, nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a login writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LocalDirectory(CredentialDirectory):
    """In-process credential directory backed by SQLAlchemy Core.

    Usage:
        directory = LocalDirectory("sqlite:///directory.db")
        await directory.create_user("admin", "admin@example.com", "admin123")
        await directory.add_user_to_group("admin", "Admin")
        directory.close()
    """

    def __init__(
        self,
        db_url: str,
        *,
        challenge_ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        mfa_issuer: str = "AuthGate",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self.mfa_issuer = mfa_issuer
        self._clock = clock

    # ------------------------------------------------------------------
    # Sync helpers
    # ------------------------------------------------------------------

    def _get_row(self, conn, username: str):
        return conn.execute(_users.select().where(_users.c.username == username)).fetchone()

    def _require_row(self, conn, username: str):
        row = self._get_row(conn, username)
        if row is None:
            raise UserNotFound(f"User {username!r} not found.")
        return row

    def _has_users(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (count or 0) > 0

    async def has_users(self) -> bool:
        """Return True if at least one user exists. Used for first-run bootstrap."""
        return await asyncio.to_thread(self._has_users)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _create_user(
        self,
        username: str,
        email: str,
        password: str,
        attributes: PrincipalAttributes | None,
        temporary: bool,
    ) -> Principal:
        attrs = attributes or PrincipalAttributes()
        status = PrincipalStatus.UNCONFIRMED if temporary else PrincipalStatus.ACTIVE
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.insert().values(
                        username=username,
                        email=email,
                        hashed_password=hash_password(password),
                        status=status.value,
                        given_name=attrs.given_name or "",
                        family_name=attrs.family_name or "",
                        extra=json.dumps(attrs.extra),
                        created_at=self._clock().isoformat(),
                    )
                )
                row = self._require_row(conn, username)
        except IntegrityError as exc:
            raise DuplicateUsername(f"Username {username!r} already exists.") from exc
        return _row_to_principal(row)

    async def create_user(self, username, email, password, attributes=None, *, temporary=False) -> Principal:
        return await asyncio.to_thread(self._create_user, username, email, password, attributes, temporary)

    def _get_user(self, username: str) -> Principal:
        with self.engine.connect() as conn:
            return _row_to_principal(self._require_row(conn, username))

    async def get_user(self, username: str) -> Principal:
        return await asyncio.to_thread(self._get_user, username)

    def _list_users(self, limit: int, offset: int) -> list[Principal]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username).limit(limit).offset(offset)).fetchall()
        return [_row_to_principal(r) for r in rows]

    async def list_users(self, limit: int = 50, offset: int = 0) -> list[Principal]:
        return await asyncio.to_thread(self._list_users, limit, offset)

    def _update_user_attributes(self, username: str, attributes: PrincipalAttributes) -> Principal:
        with self.engine.begin() as conn:
            row = self._require_row(conn, username)
            values: dict = {}
            if attributes.email is not None:
                values["email"] = attributes.email
            if attributes.given_name is not None:
                values["given_name"] = attributes.given_name
            if attributes.family_name is not None:
                values["family_name"] = attributes.family_name
            if attributes.extra:
                merged = {**json.loads(row.extra or "{}"), **attributes.extra}
                values["extra"] = json.dumps(merged)
            if values:
                conn.execute(_users.update().where(_users.c.username == username).values(**values))
            row = self._require_row(conn, username)
        return _row_to_principal(row)

    async def update_user_attributes(self, username: str, attributes: PrincipalAttributes) -> Principal:
        return await asyncio.to_thread(self._update_user_attributes, username, attributes)

    def _set_user_status(self, username: str, status: PrincipalStatus) -> Principal:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.username == username).values(status=status.value))
            if result.rowcount == 0:
                raise UserNotFound(f"User {username!r} not found.")
            row = self._require_row(conn, username)
        return _row_to_principal(row)

    async def set_user_status(self, username: str, status: PrincipalStatus) -> Principal:
        return await asyncio.to_thread(self._set_user_status, username, status)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def _issue_challenge(self, conn, username: str, kind: ChallengeKind) -> ChallengeIssued:
        now = self._clock()
        expires = now + self.challenge_ttl
        token = secrets.token_urlsafe(32)
        # Opportunistic cleanup keeps the table bounded without a background task.
        conn.execute(
            _challenge_sessions.delete().where(
                (_challenge_sessions.c.expires_at < now.timestamp()) | (_challenge_sessions.c.consumed == 1)
            )
        )
        conn.execute(
            _challenge_sessions.insert().values(
                session_token=token,
                username=username,
                kind=kind.value,
                created_at=now.timestamp(),
                expires_at=expires.timestamp(),
                consumed=0,
            )
        )
        session = ChallengeSession(
            session_token=token,
            kind=kind,
            username=username,
            created_at=now,
            expires_at=expires,
        )
        return ChallengeIssued(kind=kind, session=session)

    def _verify_password(self, username: str, password: str) -> Principal | ChallengeIssued:
        with self.engine.begin() as conn:
            row = self._get_row(conn, username)
            if row is None:
                # Equalize timing -- do NOT return before running bcrypt [C1]
                verify_password(password, DUMMY_HASH)
                raise InvalidCredentials()
            if not verify_password(password, row.hashed_password):
                raise InvalidCredentials()
            if row.status == PrincipalStatus.DISABLED.value:
                raise InvalidCredentials()
            if row.status == PrincipalStatus.UNCONFIRMED.value:
                return self._issue_challenge(conn, username, ChallengeKind.PASSWORD_RESET_REQUIRED)
            if row.mfa_enabled and row.mfa_secret:
                return self._issue_challenge(conn, username, ChallengeKind.TOTP)
            conn.execute(
                _users.update().where(_users.c.username == username).values(last_login=self._clock().isoformat())
            )
            return _row_to_principal(row)

    async def verify_password(self, username: str, password: str) -> Principal | ChallengeIssued:
        return await asyncio.to_thread(self._verify_password, username, password)

    def _consume_session(self, conn, username: str, session_token: str, kind: ChallengeKind) -> None:
        """Spend the session. Exactly one caller can flip consumed 0 -> 1."""
        result = conn.execute(
            _challenge_sessions.update()
            .where(
                (_challenge_sessions.c.session_token == session_token)
                & (_challenge_sessions.c.username == username)
                & (_challenge_sessions.c.kind == kind.value)
                & (_challenge_sessions.c.consumed == 0)
                & (_challenge_sessions.c.expires_at >= self._clock().timestamp())
            )
            .values(consumed=1)
        )
        if result.rowcount != 1:
            raise ChallengeVerificationFailed("Challenge session is invalid, expired or already used.")

    def _respond_to_challenge(
        self,
        username: str,
        session_token: str,
        kind: ChallengeKind,
        response: str,
    ) -> Principal | ChallengeIssued:
        # The session is consumed in its own transaction so it stays spent
        # even when the response below turns out to be wrong.
        with self.engine.begin() as conn:
            self._consume_session(conn, username, session_token, kind)

        with self.engine.begin() as conn:
            row = self._get_row(conn, username)
            if row is None or row.status == PrincipalStatus.DISABLED.value:
                raise ChallengeVerificationFailed("Challenge user is no longer valid.")

            if kind is ChallengeKind.PASSWORD_RESET_REQUIRED:
                conn.execute(
                    _users.update()
                    .where(_users.c.username == username)
                    .values(hashed_password=hash_password(response), status=PrincipalStatus.ACTIVE.value)
                )
                if row.mfa_enabled and row.mfa_secret:
                    return self._issue_challenge(conn, username, ChallengeKind.TOTP)
            elif kind is ChallengeKind.TOTP:
                if not row.mfa_secret or not pyotp.TOTP(row.mfa_secret).verify(response, valid_window=TOTP_VALID_WINDOW):
                    raise ChallengeVerificationFailed("TOTP code did not match.")
            else:
                # This directory never issues SMS challenges.
                raise ChallengeVerificationFailed(f"Unsupported challenge kind {kind.value!r}.")

            conn.execute(
                _users.update().where(_users.c.username == username).values(last_login=self._clock().isoformat())
            )
            row = self._require_row(conn, username)
        return _row_to_principal(row)

    async def respond_to_challenge(self, username, session_token, kind, response) -> Principal | ChallengeIssued:
        return await asyncio.to_thread(self._respond_to_challenge, username, session_token, kind, response)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _list_groups_for_user(self, username: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_groups.c.group_name)
                .where(_user_groups.c.username == username)
                .order_by(_user_groups.c.group_name)
            ).fetchall()
        return [r.group_name for r in rows]

    async def list_groups_for_user(self, username: str) -> list[str]:
        return await asyncio.to_thread(self._list_groups_for_user, username)

    def _add_user_to_group(self, username: str, group: str) -> None:
        with self.engine.connect() as conn:
            self._require_row(conn, username)
        try:
            with self.engine.begin() as conn:
                conn.execute(_user_groups.insert().values(username=username, group_name=group))
        except IntegrityError:
            # Already a member -- adding is idempotent.
            pass

    async def add_user_to_group(self, username: str, group: str) -> None:
        await asyncio.to_thread(self._add_user_to_group, username, group)

    def _remove_user_from_group(self, username: str, group: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _user_groups.delete().where(
                    (_user_groups.c.username == username) & (_user_groups.c.group_name == group)
                )
            )

    async def remove_user_from_group(self, username: str, group: str) -> None:
        await asyncio.to_thread(self._remove_user_from_group, username, group)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    def _get_mfa_enrollment(self, username: str) -> MfaEnrollment:
        with self.engine.connect() as conn:
            row = self._require_row(conn, username)
        return _row_to_enrollment(row)

    async def get_mfa_enrollment(self, username: str) -> MfaEnrollment:
        return await asyncio.to_thread(self._get_mfa_enrollment, username)

    def _begin_software_token_association(self, username: str) -> SoftwareTokenAssociation:
        secret = pyotp.random_base32()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(mfa_pending_secret=secret)
            )
            if result.rowcount == 0:
                raise UserNotFound(f"User {username!r} not found.")
        uri = pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name=self.mfa_issuer)
        return SoftwareTokenAssociation(secret=secret, provisioning_uri=uri)

    async def begin_software_token_association(self, username: str) -> SoftwareTokenAssociation:
        return await asyncio.to_thread(self._begin_software_token_association, username)

    def _verify_software_token(self, username: str, code: str, secret: str | None) -> None:
        with self.engine.connect() as conn:
            row = self._require_row(conn, username)
        if secret is not None:
            pending = row.mfa_pending_secret
            if not pending or not hmac.compare_digest(pending, secret):
                raise CodeMismatch("Secret does not match the pending enrollment.")
            expected = pending
        else:
            expected = row.mfa_secret
        if not expected or not pyotp.TOTP(expected).verify(code, valid_window=TOTP_VALID_WINDOW):
            raise CodeMismatch("TOTP code did not match.")

    async def verify_software_token(self, username: str, code: str, secret: str | None = None) -> None:
        await asyncio.to_thread(self._verify_software_token, username, code, secret)

    def _set_mfa_preference(self, username: str, enabled: bool, secret: str | None) -> MfaEnrollment:
        with self.engine.begin() as conn:
            row = self._require_row(conn, username)
            if enabled:
                if not secret:
                    raise MfaStateError("Enabling MFA requires the verified secret.", _row_to_enrollment(row).state)
                # Commit only the secret that was verified; a restarted enrollment
                # in between leaves a different pending secret and matches no row.
                result = conn.execute(
                    _users.update()
                    .where(_users.c.username == username, _users.c.mfa_pending_secret == secret)
                    .values(mfa_secret=secret, mfa_pending_secret=None, mfa_enabled=1, mfa_preferred=1)
                )
                if result.rowcount == 0:
                    raise CodeMismatch("Secret does not match the pending enrollment.")
            else:
                conn.execute(
                    _users.update()
                    .where(_users.c.username == username)
                    .values(mfa_secret=None, mfa_pending_secret=None, mfa_enabled=0, mfa_preferred=0)
                )
            row = self._require_row(conn, username)
        return _row_to_enrollment(row)

    async def set_mfa_preference(self, username: str, enabled: bool, secret: str | None = None) -> MfaEnrollment:
        return await asyncio.to_thread(self._set_mfa_preference, username, enabled, secret)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        username=row.username,
        email=row.email or "",
        status=PrincipalStatus(row.status),
        given_name=row.given_name or "",
        family_name=row.family_name or "",
        extra=json.loads(row.extra or "{}"),
        created_at=row.created_at,
    )


def _row_to_enrollment(row) -> MfaEnrollment:
    if row.mfa_enabled:
        state = MfaState.ENABLED
    elif row.mfa_pending_secret:
        state = MfaState.PENDING_VERIFICATION
    else:
        state = MfaState.DISABLED
    return MfaEnrollment(
        username=row.username,
        state=state,
        secret=row.mfa_secret,
        preferred=bool(row.mfa_preferred),
    )
