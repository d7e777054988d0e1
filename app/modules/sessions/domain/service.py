from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import structlog

from app.modules.sessions.domain.records import (
    SESSION_ABSOLUTE_TIMEOUT,
    SESSION_EXPIRED,
    SESSION_IDLE_TIMEOUT,
    SESSION_NOT_FOUND,
    STORE_UNAVAILABLE,
    UNKNOWN_USER_AGENT,
    SessionContext,
    SessionRecord,
    SessionValidation,
    SessionView,
    classify_user_agent,
)
from app.modules.sessions.domain.store import SessionStore
from app.shared.core.cache import TTLStore
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import InvalidRequestError, StoreUnavailableError
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    ADMIN_SESSION_EVENTS_TOTAL,
    ADMIN_SESSION_VALIDATION_FAILURES_TOTAL,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycleService:
    """
    Creates, refreshes, validates and terminates admin sessions.

    Validity is the conjunction of three clocks: idle (reset by activity),
    absolute (fixed at creation) and an optional explicit ``expires_at``.
    Any failed clause removes the record and its index entries.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        max_actions: int = 5,
        active_window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_actions = max_actions
        self.active_window = active_window
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        ttl_store: TTLStore,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "SessionLifecycleService":
        settings = settings or get_settings()
        store = SessionStore(
            ttl_store,
            idle_timeout=timedelta(seconds=settings.session_idle_timeout_seconds),
            absolute_timeout=timedelta(seconds=settings.session_absolute_timeout_seconds),
            key_prefix=settings.ADMIN_SESSION_KEY_PREFIX,
        )
        return cls(
            store,
            max_actions=settings.ADMIN_SESSION_MAX_ACTIONS,
            active_window=timedelta(minutes=settings.ADMIN_SESSION_ACTIVE_WINDOW_MINUTES),
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    def _invalid_reason(self, record: SessionRecord, now: datetime) -> Optional[str]:
        if record.expires_at is not None and now >= record.expires_at:
            return SESSION_EXPIRED
        if now >= record.created_at + self.store.absolute_timeout:
            return SESSION_ABSOLUTE_TIMEOUT
        if now >= record.last_seen + self.store.idle_timeout:
            return SESSION_IDLE_TIMEOUT
        return None

    async def _remove(self, session_id: str, user_id: Optional[str]) -> bool:
        removed = await self.store.delete(session_id)
        await self.store.remove_from_index(self.store.global_index_key, session_id)
        if user_id:
            await self.store.remove_from_index(self.store.user_index_key(user_id), session_id)
        return removed

    async def create_session(
        self,
        user_id: str,
        email: str,
        ip: str = "",
        user_agent: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        *,
        session_id: Optional[str] = None,
    ) -> SessionRecord:
        if not user_id:
            raise InvalidRequestError("user_id is required to open an admin session")
        now = self._now()
        if expires_at is not None and expires_at <= now:
            raise InvalidRequestError("expires_at must be in the future")

        ua = user_agent or UNKNOWN_USER_AGENT
        fingerprint = classify_user_agent(ua)
        record = SessionRecord(
            id=session_id or str(uuid4()),
            user_id=user_id,
            email=email,
            ip=ip,
            user_agent=ua,
            device=fingerprint.device,
            browser=fingerprint.browser,
            os=fingerprint.os,
            created_at=now,
            last_seen=now,
            expires_at=expires_at,
            actions=[],
        )
        if await self.store.put(record, now):
            await self.store.add_to_index(self.store.global_index_key, record.id)
            await self.store.add_to_index(self.store.user_index_key(user_id), record.id)

        ADMIN_SESSION_EVENTS_TOTAL.labels(event="created").inc()
        logger.info(
            "admin_session_created",
            session_id=record.id,
            user_id=user_id,
            device=record.device,
            browser=record.browser,
            os=record.os,
        )
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return await self.store.get(session_id)

    async def touch_session(
        self,
        session_id: str,
        context: Optional[SessionContext] = None,
        action: Optional[str] = None,
        *,
        recreate_missing: bool = True,
    ) -> Optional[SessionRecord]:
        """
        Refresh ``last_seen`` and fold request context into the record.

        A missing record is re-created from ``context`` when one is supplied
        and ``recreate_missing`` is set. A record whose clocks have already
        elapsed is removed and reported as missing, never revived.
        """
        record = await self.store.get(session_id)
        if record is None:
            if context is None or not recreate_missing:
                return None
            ADMIN_SESSION_EVENTS_TOTAL.labels(event="recreated").inc()
            logger.warning(
                "admin_session_recreated",
                session_id=session_id,
                user_id=context.user_id,
            )
            return await self.create_session(
                context.user_id,
                context.email,
                context.ip,
                context.user_agent,
                context.expires_at,
                session_id=session_id,
            )

        now = self._now()
        if self._invalid_reason(record, now) is not None:
            await self._remove(record.id, record.user_id)
            ADMIN_SESSION_EVENTS_TOTAL.labels(event="touch_expired").inc()
            return None

        record.last_seen = now
        if context is not None:
            if context.ip:
                record.ip = context.ip
            if context.user_agent:
                record.apply_user_agent(context.user_agent)
            if context.expires_at is not None:
                record.expires_at = context.expires_at
        record.record_action(action, self.max_actions)

        if not await self.store.put(record, now):
            await self._remove(record.id, record.user_id)
            ADMIN_SESSION_EVENTS_TOTAL.labels(event="touch_expired").inc()
            return None

        ADMIN_SESSION_EVENTS_TOTAL.labels(event="touched").inc()
        return record

    async def validate_session(self, session_id: str) -> SessionValidation:
        """
        Check every expiry clock. Store failures fail closed with reason
        ``store_unavailable``.
        """
        try:
            record = await self.store.get(session_id)
            if record is None:
                return self._invalid(SESSION_NOT_FOUND, session_id)

            reason = self._invalid_reason(record, self._now())
            if reason is None:
                return SessionValidation(valid=True, record=record)

            await self._remove(record.id, record.user_id)
            return self._invalid(reason, session_id)
        except StoreUnavailableError as exc:
            logger.error(
                "admin_session_validation_store_unavailable",
                session_id=session_id,
                error=str(exc),
            )
            return self._invalid(STORE_UNAVAILABLE, session_id)

    def _invalid(self, reason: str, session_id: str) -> SessionValidation:
        ADMIN_SESSION_VALIDATION_FAILURES_TOTAL.labels(reason=reason).inc()
        logger.info("admin_session_invalid", session_id=session_id, reason=reason)
        return SessionValidation(valid=False, reason=reason)

    async def list_sessions(self, user_id: Optional[str] = None) -> list[SessionRecord]:
        index_key = (
            self.store.user_index_key(user_id) if user_id else self.store.global_index_key
        )
        return await self.store.list_from_index(index_key)

    async def is_new_device(
        self, user_id: str, ip: str, user_agent: Optional[str]
    ) -> bool:
        fingerprint = classify_user_agent(user_agent)
        for record in await self.list_sessions(user_id):
            if record.ip == ip and record.fingerprint == fingerprint:
                return False
        return True

    async def terminate_session(self, session_id: str) -> bool:
        record = await self.store.get(session_id)
        if record is None:
            await self.store.remove_from_index(self.store.global_index_key, session_id)
            return False

        removed = await self._remove(record.id, record.user_id)
        if removed:
            ADMIN_SESSION_EVENTS_TOTAL.labels(event="terminated").inc()
            audit_log(
                "admin_session_terminated",
                record.user_id,
                {"session_id": record.id},
            )
        return removed

    async def terminate_other_sessions(self, user_id: str, current_session_id: str) -> int:
        """
        Terminate every session of ``user_id`` except ``current_session_id``.

        The current session id is mandatory; calling without one would
        terminate the caller's own session and is rejected.
        """
        if not current_session_id:
            raise InvalidRequestError(
                "current_session_id is required to terminate other sessions",
                code="current_session_required",
            )

        count = 0
        for record in await self.list_sessions(user_id):
            if record.id == current_session_id:
                continue
            if await self.terminate_session(record.id):
                count += 1

        logger.info(
            "admin_sessions_terminated_others",
            user_id=user_id,
            terminated=count,
        )
        return count

    def map_session_for_client(
        self, record: SessionRecord, current_session_id: Optional[str]
    ) -> SessionView:
        now = self._now()
        return SessionView(
            id=record.id,
            user_id=record.user_id,
            email=record.email,
            ip=record.ip,
            user_agent=record.user_agent,
            device=record.device,
            browser=record.browser,
            os=record.os,
            login_time=record.created_at,
            last_activity=record.last_seen,
            expires_at=record.expires_at,
            is_active=(now - record.last_seen) < self.active_window,
            is_current_session=record.id == current_session_id,
            risk_score=compute_risk_score(record),
            actions=list(record.actions),
        )


def compute_risk_score(record: SessionRecord) -> str:
    if not record.user_agent:
        return "medium"
    if record.device == "Mobile" and record.browser == "Browser":
        return "medium"
    return "low"
