"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Enforces the DEBUG-conditional key rules:
      dev mode generates a key with a warning, production mode refuses to start
      without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Token hashing,
       JWT signing, and the derived AES/audit keys all rely on its entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [M8] BCRYPT_ROUNDS below 12 is only accepted in DEBUG mode. The test suite
       lowers it to keep runs fast; production must never do so.

  [M9] ENCRYPTION_KEY, when set, must be exactly 64 hex chars (256 bits).
       When empty, the AES-GCM key is derived from SECRET_KEY via HKDF so
       rotating SECRET_KEY also rotates the at-rest key.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, audit/, or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_MIN_PRODUCTION_BCRYPT_ROUNDS = 12


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # 64 hex chars; empty means "derive from SECRET_KEY" [M9]
    encryption_key: str = ""
    # Empty means "derive from SECRET_KEY" under a separate HKDF label
    audit_hmac_key: str = ""
    database_url: str = ""

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    require_email_verification: bool = True
    verification_token_hours: int = 24
    reset_token_minutes: int = 15

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_lifetime_hours: int = 24
    # Refresh when remaining lifetime falls to this fraction of the original
    session_refresh_threshold: float = 0.25
    max_sessions_per_user: int = 5
    # Expired / revoked sessions older than this are deleted by the sweeper
    session_sweep_grace_hours: int = 24

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    totp_issuer: str = "Gatekeeper"
    totp_valid_window: int = 1
    backup_code_count: int = 10
    two_factor_challenge_minutes: int = 10

    # ------------------------------------------------------------------
    # Rate limiting (engine-level, persisted counters)
    # ------------------------------------------------------------------

    login_max_attempts_per_account: int = 5
    login_max_attempts_per_ip: int = 20
    login_window_seconds: int = 15 * 60
    reset_max_per_account: int = 3
    reset_max_per_ip: int = 10
    reset_window_seconds: int = 60 * 60
    two_factor_max_attempts: int = 5
    two_factor_window_seconds: int = 10 * 60
    register_max_per_ip: int = 10
    register_window_seconds: int = 60 * 60
    # Reset and verification token submissions, per client IP
    token_max_attempts_per_ip: int = 20
    token_window_seconds: int = 15 * 60
    # Password re-checks inside a session (change password, 2FA management)
    reauth_max_attempts: int = 5
    reauth_window_seconds: int = 15 * 60
    # Consecutive failures tolerated before exponential backoff kicks in
    backoff_after_failures: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    backoff_jitter: float = 0.2

    # HTTP-level limit applied by slowapi in front of the engine
    login_rate_limit: str = "10/minute"

    # Comma-separated Host header allow-list for TrustedHostMiddleware
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_default_retention_days: int = 365

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    maintenance_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    oauth_state_minutes: int = 5
    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and encrypted secrets will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Sessions and encrypted secrets will not persist across restarts."
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
    def validate_crypto_params(self) -> "Settings":
        """Enforce bcrypt cost [M8] and encryption key shape [M9]."""
        if self.bcrypt_rounds < _MIN_PRODUCTION_BCRYPT_ROUNDS and not self.debug:
            raise ValueError(
                f"BCRYPT_ROUNDS must be at least {_MIN_PRODUCTION_BCRYPT_ROUNDS} outside DEBUG mode."
            )
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.encryption_key:
            try:
                raw = bytes.fromhex(self.encryption_key)
            except ValueError as exc:
                raise ValueError("ENCRYPTION_KEY must be hex encoded.") from exc
            if len(raw) != 32:
                raise ValueError("ENCRYPTION_KEY must be 64 hex characters (256 bits).")
        if not 0 < self.session_refresh_threshold < 1:
            raise ValueError("SESSION_REFRESH_THRESHOLD must be between 0 and 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
