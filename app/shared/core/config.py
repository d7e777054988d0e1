from functools import lru_cache
from threading import Lock
from typing import Any, Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

_VALID_ENVIRONMENTS = {ENV_PRODUCTION, ENV_STAGING, ENV_DEVELOPMENT, ENV_LOCAL}


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Configuration for the admin trust boundary service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Sarkari Admin Trust"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    RATELIMIT_ENABLED: bool = True
    CORS_ORIGINS: list[str] = []

    # Database (approval requests)
    DATABASE_URL: Optional[str] = None  # Required in prod, optional in dev/test
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    # Tests default to in-memory sqlite to avoid accidental side-effects on real databases.
    ALLOW_TEST_DATABASE_URL: bool = False

    # Shared TTL store (admin sessions, scheduler locks, rate limits)
    REDIS_URL: Optional[str] = None
    # Break-glass: single-instance deploys may run sessions from process memory.
    ALLOW_IN_MEMORY_SESSION_STORE: bool = False
    ALLOW_REDIS_IN_TESTS: bool = False
    LOCAL_CACHE_MAX_ENTRIES: int = 10_000

    # Admin sessions
    ADMIN_SESSION_IDLE_TIMEOUT_MINUTES: int = 30
    ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS: int = 12
    ADMIN_SESSION_MAX_ACTIONS: int = 5
    ADMIN_SESSION_ACTIVE_WINDOW_MINUTES: int = 30
    ADMIN_SESSION_KEY_PREFIX: str = "admin"

    # Dual-control approvals
    ADMIN_DUAL_APPROVAL_REQUIRED: bool = True
    ADMIN_APPROVAL_EXPIRY_MINUTES: int = 30
    ADMIN_APPROVAL_RETENTION_DAYS: int = 30
    ADMIN_APPROVAL_CLEANUP_INTERVAL_MINUTES: int = 30
    ADMIN_APPROVAL_CLEANUP_ENABLED: bool = True
    # JSON object keyed by action type, e.g.
    # {"announcement_publish": {"enabled": false}}
    ADMIN_APPROVAL_POLICY_MATRIX: dict[str, Any] = Field(default_factory=dict)

    # Bearer token verification (issuance lives in the auth service)
    ADMIN_JWT_SECRET: Optional[str] = None
    ADMIN_JWT_AUDIENCE: str = "authenticated"
    ADMIN_JWT_ISSUER: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.ENVIRONMENT not in _VALID_ENVIRONMENTS:
            raise ValueError(
                f"ENVIRONMENT must be one of {sorted(_VALID_ENVIRONMENTS)} "
                f"(got {self.ENVIRONMENT!r})."
            )
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_session_config()
        self._validate_approval_config()
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_store_config()
        return self

    def _validate_core_secrets(self) -> None:
        secret = str(self.ADMIN_JWT_SECRET or "")
        if len(secret) < 32:
            raise ValueError("ADMIN_JWT_SECRET must be set to a secure value (>= 32 chars).")

    def _validate_store_config(self) -> None:
        if self.is_production_like and not self.REDIS_URL:
            if not self.ALLOW_IN_MEMORY_SESSION_STORE:
                raise ValueError(
                    "REDIS_URL is required for the shared admin session store in "
                    "staging/production (or set ALLOW_IN_MEMORY_SESSION_STORE=true "
                    "for break-glass single-instance operation)."
                )
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    def _validate_session_config(self) -> None:
        if self.ADMIN_SESSION_IDLE_TIMEOUT_MINUTES <= 0:
            raise ValueError("ADMIN_SESSION_IDLE_TIMEOUT_MINUTES must be > 0.")
        if self.ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS <= 0:
            raise ValueError("ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS must be > 0.")
        if self.ADMIN_SESSION_IDLE_TIMEOUT_MINUTES > self.ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS * 60:
            raise ValueError(
                "ADMIN_SESSION_IDLE_TIMEOUT_MINUTES cannot exceed the absolute timeout."
            )
        if self.ADMIN_SESSION_MAX_ACTIONS < 1:
            raise ValueError("ADMIN_SESSION_MAX_ACTIONS must be >= 1.")
        if self.LOCAL_CACHE_MAX_ENTRIES < 1:
            raise ValueError("LOCAL_CACHE_MAX_ENTRIES must be >= 1.")

    def _validate_approval_config(self) -> None:
        if self.ADMIN_APPROVAL_EXPIRY_MINUTES <= 0:
            raise ValueError("ADMIN_APPROVAL_EXPIRY_MINUTES must be > 0.")
        if self.ADMIN_APPROVAL_RETENTION_DAYS < 1:
            raise ValueError("ADMIN_APPROVAL_RETENTION_DAYS must be >= 1.")
        if self.ADMIN_APPROVAL_CLEANUP_INTERVAL_MINUTES <= 0:
            raise ValueError("ADMIN_APPROVAL_CLEANUP_INTERVAL_MINUTES must be > 0.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION

    @property
    def is_production_like(self) -> bool:
        return self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}

    @property
    def session_idle_timeout_seconds(self) -> int:
        return self.ADMIN_SESSION_IDLE_TIMEOUT_MINUTES * 60

    @property
    def session_absolute_timeout_seconds(self) -> int:
        return self.ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS * 3600

    @property
    def approval_cleanup_interval_minutes(self) -> int:
        """Cleanup cadence, floored so a misconfiguration cannot hammer the database."""
        return max(5, self.ADMIN_APPROVAL_CLEANUP_INTERVAL_MINUTES)
