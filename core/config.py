"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Decides the cookie Secure flag from DEBUG when it is not set
      explicitly and rejects half-configured OAuth credentials.

Security notes:
  - secure_cookies defaults to "on unless DEBUG". Plain-HTTP local
    development needs DEBUG=true (or SECURE_COOKIES=false) because browsers
    drop Secure cookies on http:// origins.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or sessions/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"


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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "gatehouse_session"
    session_inactivity_seconds: int = 24 * 60 * 60
    session_sweep_interval_seconds: int = 60
    # None = derive from debug in the validator below
    secure_cookies: Optional[bool] = None

    # ------------------------------------------------------------------
    # OAuth (GitHub). Empty strings mean OAuth login is disabled.
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    oauth_attempt_ttl_seconds: int = 600

    # ------------------------------------------------------------------
    # Direct credentials
    # ------------------------------------------------------------------

    credentials_file: str = ""
    login_rate_limit: str = "10/minute"

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Resolve derived fields and refuse inconsistent configuration.

        - secure_cookies unset: Secure in production, plain in DEBUG.
        - Exactly one of GITHUB_CLIENT_ID / GITHUB_CLIENT_SECRET set is a
          configuration mistake, not a request to disable OAuth.
        - Windows and intervals must be positive.
        """
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
            if self.debug:
                logger.warning("DEBUG mode: session cookie is sent without the Secure flag.")

        if bool(self.github_client_id) != bool(self.github_client_secret):
            raise ValueError("GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET must be set together.")

        for name in ("session_inactivity_seconds", "session_sweep_interval_seconds", "oauth_attempt_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
