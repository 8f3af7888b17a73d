"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for PostureWatch happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Singleton via lru_cache: get_settings() instantiates Settings once at first
call and returns the cached instance on every subsequent call.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Bearer tokens are
  HS256-signed with it.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
  hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, monitor/, or alerts/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("posturewatch.config")


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
    secret_key: str = ""
    token_expire_seconds: int = 3600
    database_url: str = "sqlite:///posturewatch.db"

    # ------------------------------------------------------------------
    # Fetcher
    # ------------------------------------------------------------------

    probe_timeout_seconds: float = Field(default=15.0, gt=0, le=60)
    tls_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    max_body_bytes: int = Field(default=500_000, gt=0)
    max_redirects: int = 5
    user_agent: str = "PostureWatch/1.0 (passive security posture monitor)"
    cert_lookup_enabled: bool = True

    # ------------------------------------------------------------------
    # Drift and alerting
    # ------------------------------------------------------------------

    score_delta_threshold: int = 10
    # None means improvements share the per-type preference cooldown.
    improvement_cooldown_hours: Optional[int] = None

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    scheduler_max_workers: int = Field(default=4, ge=1, le=32)
    # 0 disables the in-process loop; use POST /api/v1/jobs/scheduler from cron.
    scheduler_interval_seconds: int = 0
    scan_lease_seconds: int = 300
    job_token: str = ""

    # ------------------------------------------------------------------
    # Email transport
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "PostureWatch Alerts <alerts@posturewatch.local>"
    dashboard_url: str = "http://localhost:8000/"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    scan_rate_limit: str = "10/15minutes"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Dev mode auto-generates a key with a warning; production requires one."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
