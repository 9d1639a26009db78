"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for RoleKeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and the development fallback for seed account passwords.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  session cookie signature both rely on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure, and seed accounts without a configured password are skipped
  rather than created with a well-known default.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or accounts/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("rolekeeper.config")

# Development-only fallbacks for the seed accounts. Never used when DEBUG is off.
_DEV_SEED_PASSWORDS = {"seed_admin_password": "admin", "seed_user_password": "user"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    database_url: str = "sqlite:///rolekeeper.db"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Bootstrap seeding
    # ------------------------------------------------------------------

    seed_on_startup: bool = True
    seed_admin_email: str = "admin@example.com"
    seed_admin_password: str = ""
    seed_user_email: str = "user@example.com"
    seed_user_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
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
    def apply_dev_seed_passwords(self) -> "Settings":
        """Fill empty seed passwords with development defaults when DEBUG is on.

        The password value itself is never logged.
        """
        if not self.debug:
            return self
        for field_name, fallback in _DEV_SEED_PASSWORDS.items():
            if not getattr(self, field_name):
                setattr(self, field_name, fallback)
                logger.warning("Using development default for %s.", field_name.upper())
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
