"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the registry happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, admin_ips -> ADMIN_IPS).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a session secret with a
      warning; production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       session cookie and, when ENCRYPTION_KEY is unset, seeds the at-rest
       encryption key for TOTP secrets.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [M8] ADMIN_IP_ALLOW_ALL_WHEN_EMPTY is the only way an empty ADMIN_IPS list
       admits anyone. It is refused outside DEBUG, so production always fails
       closed when no admin addresses are configured.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("alwr.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'alwr_registry.db'}"


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
    app_version: str = "1.0.0"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on any single store call. SQLite busy timeout and Postgres
    # connect/statement timeouts are derived from this value.
    db_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "alwr_session"

    # ------------------------------------------------------------------
    # Delegated login (OpenID Connect). Empty client id disables the flow.
    # ------------------------------------------------------------------

    oidc_issuer_url: str = "https://replit.com/oidc"
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_scope: str = "openid email profile offline_access"

    # ------------------------------------------------------------------
    # Admin network allow-list
    # ------------------------------------------------------------------

    # Comma separated addresses or CIDR networks, e.g. "10.0.0.5,192.168.1.0/24".
    admin_ips: str = ""
    admin_ip_allow_all_when_empty: bool = False

    # ------------------------------------------------------------------
    # At-rest secrets
    # ------------------------------------------------------------------

    # urlsafe base64 Fernet key. Derived from SECRET_KEY when unset.
    encryption_key: str = ""
    totp_issuer: str = "America Living Will Registry"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    # memory:// for a single instance; redis://host:6379 when scaled out.
    rate_limit_storage_uri: str = "memory://"
    login_rate_limit: str = "10/minute"
    sensitive_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # System settings cache
    # ------------------------------------------------------------------

    settings_cache_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6] [M7] and the allow-list flag [M8].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing, or if the admin allow-list is configured
            to fail open.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.admin_ip_allow_all_when_empty and not self.debug:
            raise ValueError("ADMIN_IP_ALLOW_ALL_WHEN_EMPTY may only be enabled together with DEBUG=true.")
        return self

    @property
    def admin_ip_list(self) -> list[str]:
        """ADMIN_IPS split into trimmed, non-empty entries."""
        return [entry.strip() for entry in self.admin_ips.split(",") if entry.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
