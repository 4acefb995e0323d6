"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, known_groups -> KNOWN_GROUPS as JSON).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. The signing key policy and the group vocabulary are both
      checked here so a misconfigured process refuses to start.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [G1] Group names used for authorization decisions come from a closed
       vocabulary (KNOWN_GROUPS). Every other group-bearing setting is checked
       against it at startup, and require_group() checks its arguments against
       it when routes are declared.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import re
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

GROUP_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,63}$")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authgate_directory.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens and challenges
    # ------------------------------------------------------------------

    token_ttl_seconds: int = 24 * 3600
    challenge_ttl_seconds: int = 180

    # ------------------------------------------------------------------
    # Credential directory
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    directory_timeout_seconds: float = 5.0
    bootstrap_admin_username: str = ""
    bootstrap_admin_password: str = ""

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    known_groups: list[str] = ["Admin", "Moderator", "User"]
    default_group: str = "User"
    # Exactly one source of truth per deployment: the directory's own group
    # membership, or the in-process table seeded from local_group_seed.
    group_source: Literal["directory", "local"] = "directory"
    local_group_seed: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "AuthGate"

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True
    # Set SECURE_COOKIES=true in production so the auth cookie is HTTPS-only.
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        if self.token_ttl_seconds <= 0:
            raise ValueError("TOKEN_TTL_SECONDS must be positive.")
        if self.challenge_ttl_seconds <= 0:
            raise ValueError("CHALLENGE_TTL_SECONDS must be positive.")
        if self.directory_timeout_seconds <= 0:
            raise ValueError("DIRECTORY_TIMEOUT_SECONDS must be positive.")
        return self

    @model_validator(mode="after")
    def validate_group_vocabulary(self) -> "Settings":
        """Validate the closed group vocabulary and everything that references it [G1]."""
        if not self.known_groups:
            raise ValueError("KNOWN_GROUPS must name at least one group.")
        if len(set(self.known_groups)) != len(self.known_groups):
            raise ValueError("KNOWN_GROUPS contains duplicate names.")
        bad = [g for g in self.known_groups if not GROUP_NAME_PATTERN.match(g)]
        if bad:
            raise ValueError(f"Invalid group names in KNOWN_GROUPS: {bad!r}")
        if self.default_group not in self.known_groups:
            raise ValueError(f"DEFAULT_GROUP {self.default_group!r} is not in KNOWN_GROUPS.")
        for username, groups in self.local_group_seed.items():
            unknown = set(groups) - set(self.known_groups)
            if unknown:
                raise ValueError(f"LOCAL_GROUP_SEED for {username!r} names unknown groups: {sorted(unknown)!r}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
