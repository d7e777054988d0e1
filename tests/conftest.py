"""
Global pytest fixtures for the admin trust boundary test suite.

Provides:
- Async database session backed by a temporary SQLite file
- In-memory TTL store and a controllable clock
- Session and approval services wired to both
- Bearer token helpers and an httpx client against the real app
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_JWT_SECRET"] = "test-admin-jwt-secret-at-least-32-bytes-long"
os.environ["ADMIN_APPROVAL_CLEANUP_ENABLED"] = "false"

from app.models import admin_approval  # noqa: E402,F401


class FakeClock:
    """Callable clock for services; advanced explicitly by tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_file = f"test_{uuid4().hex}.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    yield engine
    await engine.dispose()

    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def session_maker(async_engine):
    """Create tables and return a session factory bound to the test engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator:
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ttl_store():
    from app.shared.core.cache import LocalTTLStore

    return LocalTTLStore(max_entries=1000)


@pytest.fixture
def session_service(ttl_store, clock):
    from app.modules.sessions.domain.service import SessionLifecycleService

    return SessionLifecycleService.from_settings(ttl_store, clock=clock)


@pytest.fixture
def approval_service(db_session, clock):
    from app.modules.approvals.domain.service import ApprovalWorkflowService

    return ApprovalWorkflowService.from_settings(db_session, clock=clock)


@pytest.fixture
def requester():
    from app.modules.approvals.domain.service import ApprovalActor

    return ApprovalActor(user_id="editor-1", email="editor@example.com", role="editor")


@pytest.fixture
def reviewer():
    from app.modules.approvals.domain.service import ApprovalActor

    return ApprovalActor(user_id="reviewer-1", email="reviewer@example.com", role="reviewer")


@pytest.fixture
def publish_action():
    from app.modules.approvals.domain.actions import build_action

    return build_action(
        "announcement_bulk_publish",
        "/api/admin/announcements/bulk-publish",
        "post",
        ["a-3", "a-1", "a-2"],
        {"status": "published", "types": ["job"]},
    )


# ============================================================================
# Authentication Fixtures
# ============================================================================

@pytest.fixture
def make_token() -> Callable[..., str]:
    from app.shared.core.auth import create_access_token

    def _make(
        user_id: str = "admin-1",
        role: str = "admin",
        email: str | None = None,
        expires_in: timedelta = timedelta(hours=1),
        **claims: Any,
    ) -> str:
        payload = {"sub": user_id, "email": email or f"{user_id}@example.com", "role": role}
        payload.update(claims)
        return create_access_token(payload, expires_delta=expires_in)

    return _make


@pytest.fixture
def auth_headers(make_token) -> Callable[..., dict[str, str]]:
    def _headers(
        user_id: str = "admin-1",
        role: str = "admin",
        session_id: str | None = None,
        **kwargs: Any,
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {make_token(user_id, role, **kwargs)}",
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0",
        }
        if session_id:
            headers["X-Admin-Session-Id"] = session_id
        return headers

    return _headers


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Use the real app; TESTING disables rate limits and the scheduler."""
    from app.main import app as admin_app

    return admin_app


@pytest_asyncio.fixture
async def async_client(app, db, session_service) -> AsyncGenerator:
    """Async test client. Shares the test DB session and session service."""
    from httpx import ASGITransport, AsyncClient
    from app.modules.sessions.api.v1.dependencies import get_session_service
    from app.shared.db.session import get_db

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_session_service] = lambda: session_service

    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_session_service, None)


@pytest_asyncio.fixture
async def open_session(session_service) -> Callable[..., Any]:
    """Create a live session for ``user_id`` directly through the service."""

    async def _open(user_id: str = "admin-1", **kwargs: Any):
        return await session_service.create_session(
            user_id,
            f"{user_id}@example.com",
            kwargs.pop("ip", "203.0.113.7"),
            kwargs.pop("user_agent", "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0"),
            **kwargs,
        )

    return _open
