from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.shared.core.config import Settings

SECRET = "x" * 40


def test_defaults_cover_session_and_approval_timing() -> None:
    settings = Settings(TESTING=True)

    assert settings.session_idle_timeout_seconds == 30 * 60
    assert settings.session_absolute_timeout_seconds == 12 * 3600
    assert settings.ADMIN_APPROVAL_EXPIRY_MINUTES == 30
    assert settings.ADMIN_APPROVAL_RETENTION_DAYS == 30
    assert settings.ADMIN_DUAL_APPROVAL_REQUIRED is True


def test_unknown_environment_is_rejected() -> None:
    with pytest.raises(ValidationError, match="ENVIRONMENT must be one of"):
        Settings(ENVIRONMENT="qa", TESTING=True)


def test_testing_flag_is_refused_in_production() -> None:
    with pytest.raises(ValidationError, match="TESTING must be false"):
        Settings(ENVIRONMENT="production", TESTING=True)


def test_idle_timeout_cannot_exceed_absolute_timeout() -> None:
    with pytest.raises(ValidationError, match="cannot exceed the absolute timeout"):
        Settings(
            TESTING=True,
            ADMIN_SESSION_IDLE_TIMEOUT_MINUTES=120,
            ADMIN_SESSION_ABSOLUTE_TIMEOUT_HOURS=1,
        )


@pytest.mark.parametrize(
    "overrides",
    [
        {"ADMIN_APPROVAL_EXPIRY_MINUTES": 0},
        {"ADMIN_APPROVAL_RETENTION_DAYS": 0},
        {"ADMIN_SESSION_MAX_ACTIONS": 0},
        {"LOCAL_CACHE_MAX_ENTRIES": 0},
    ],
)
def test_non_positive_limits_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        Settings(TESTING=True, **overrides)


def test_short_jwt_secret_is_rejected_outside_tests() -> None:
    with pytest.raises(ValidationError, match="ADMIN_JWT_SECRET"):
        Settings(TESTING=False, ADMIN_JWT_SECRET="short")


def test_staging_requires_redis_unless_break_glass() -> None:
    with pytest.raises(ValidationError, match="REDIS_URL is required"):
        Settings(ENVIRONMENT="staging", TESTING=False, ADMIN_JWT_SECRET=SECRET)

    settings = Settings(
        ENVIRONMENT="staging",
        TESTING=False,
        ADMIN_JWT_SECRET=SECRET,
        ALLOW_IN_MEMORY_SESSION_STORE=True,
    )
    assert settings.is_production_like is True
    assert settings.is_production is False


def test_production_requires_database_url() -> None:
    with pytest.raises(ValidationError, match="DATABASE_URL is required"):
        Settings(
            ENVIRONMENT="production",
            TESTING=False,
            ADMIN_JWT_SECRET=SECRET,
            REDIS_URL="redis://cache:6379/0",
            DATABASE_URL=None,
        )
