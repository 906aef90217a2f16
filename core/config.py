"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for FieldTrack happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, otp_ttl_seconds -> OTP_TTL_SECONDS).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Dev mode (DEBUG=true) generates a signing key with a warning;
      production mode refuses to start without one.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright. HS256 relies
       on key entropy -- a short key weakens every token the service issues.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure.

  [M8] REFRESH_SECRET_KEY and RESET_SECRET_KEY are optional. When unset they
       fall back to SECRET_KEY. That works, but a leaked refresh secret then
       also forges access tokens, so a warning is logged at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("fieldtrack.config")

_MIN_KEY_LEN = 32


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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    refresh_secret_key: str = ""
    reset_secret_key: str = ""

    database_url: str = "sqlite:///fieldtrack_auth.db"

    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600  # 1 hour
    refresh_token_expire_seconds: int = 7 * 24 * 3600  # 7 days
    reset_token_expire_seconds: int = 3600  # 1 hour

    # bcrypt cost factor. 12 lands around 100-250ms per verify on current
    # hardware. Tests drop this to 4 (the bcrypt minimum).
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # OTP ledger
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = 300  # 5 minutes
    otp_max_attempts: int = 5
    # Empty -> in-process ledger. A file path -> SQLite ledger shared by
    # every worker process on the host.
    otp_db_path: str = ""
    otp_purge_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # SMS gateway (optional -- empty URL means codes are only logged)
    # ------------------------------------------------------------------

    sms_gateway_url: str = ""
    sms_api_key: str = ""
    sms_timeout_seconds: float = 10.0
    sms_sender_name: str = "Snowfun Nepal"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        if v < 4 or v > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return v

    @field_validator("otp_ttl_seconds", "otp_purge_interval_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("OTP intervals must be at least 1 second.")
        return v

    @field_validator("otp_max_attempts")
    @classmethod
    def validate_otp_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("OTP_MAX_ATTEMPTS must be at least 1.")
        return v

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Enforce the signing key policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate SECRET_KEY with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject any configured key shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < _MIN_KEY_LEN:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        for name in ("refresh_secret_key", "reset_secret_key"):
            value = getattr(self, name)
            if value and len(value) < _MIN_KEY_LEN:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        return self

    @property
    def effective_refresh_secret(self) -> str:
        return self.refresh_secret_key or self.secret_key

    @property
    def effective_reset_secret(self) -> str:
        return self.reset_secret_key or self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    settings = Settings()
    if not settings.refresh_secret_key:
        logger.warning("REFRESH_SECRET_KEY not set; refresh tokens are signed with SECRET_KEY.")
    if not settings.reset_secret_key:
        logger.warning("RESET_SECRET_KEY not set; password reset tokens are signed with SECRET_KEY.")
    return settings
