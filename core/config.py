"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for keyhold happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, receive a Settings instance through a component constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. cron_api_key -> CRON_API_KEY). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional CRON_API_KEY logic: dev mode
      generates a key with a warning, production mode refuses to start without
      one.

Timeouts are configured in seconds here. Components convert to milliseconds
via the *_ms properties because Clock.now() returns milliseconds.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyhold.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'keyhold.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
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
    db_url: str = _DEFAULT_DB_URL
    base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_timeout_seconds: int = Field(default=30 * 24 * 3600, gt=0)
    verify_email_timeout_seconds: int = Field(default=60 * 24 * 3600, gt=0)
    password_reset_timeout_seconds: int = Field(default=15 * 60, gt=0)
    login_token_timeout_seconds: int = Field(default=15 * 60, gt=0)
    privilege_elevation_timeout_seconds: int = Field(default=10 * 60, gt=0)
    # After this much inactivity the last activity becomes the "previous visit".
    inactivity_refresh_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31. Tests run at 4; production stays at 10.
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    audit_poll_interval_seconds: float = Field(default=0.5, gt=0)

    # ------------------------------------------------------------------
    # Outbound mail (empty smtp_host means "log instead of send")
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@localhost"

    # ------------------------------------------------------------------
    # Maintenance endpoint
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    cron_api_key: str = ""

    # ------------------------------------------------------------------
    # Derived values (milliseconds)
    # ------------------------------------------------------------------

    @property
    def session_timeout_ms(self) -> int:
        return self.session_timeout_seconds * 1000

    @property
    def verify_email_timeout_ms(self) -> int:
        return self.verify_email_timeout_seconds * 1000

    @property
    def password_reset_timeout_ms(self) -> int:
        return self.password_reset_timeout_seconds * 1000

    @property
    def login_token_timeout_ms(self) -> int:
        return self.login_token_timeout_seconds * 1000

    @property
    def privilege_elevation_timeout_ms(self) -> int:
        return self.privilege_elevation_timeout_seconds * 1000

    @property
    def inactivity_refresh_ms(self) -> int:
        return self.inactivity_refresh_seconds * 1000

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_cron_api_key(self) -> "Settings":
        """Enforce the CRON_API_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            The maintenance endpoint is still protected, just not reachable
            from an external scheduler that does not know the key.

        Production mode (DEBUG=false or not set): refuse to start if
            CRON_API_KEY is missing. Without it the expired-token sweep
            could never be triggered.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.cron_api_key:
            if self.debug:
                self.cron_api_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated CRON_API_KEY. External cron jobs cannot authenticate.")
            else:
                raise ValueError(
                    "CRON_API_KEY is required in production mode. "
                    "Set CRON_API_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.cron_api_key) < 32:
            raise ValueError("CRON_API_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the components.
    """
    return Settings()
