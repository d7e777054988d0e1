from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.approvals.domain.service import ApprovalWorkflowService, CleanupResult
from app.shared.core.cache import get_redis_client
from app.shared.core.config import Settings, get_settings
from app.shared.core.ops_metrics import ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL

logger = structlog.get_logger()

CLEANUP_JOB_ID = "admin_approval_cleanup"


class ApprovalCleanupScheduler:
    """Runs the approval expiry sweep and retention cleanup on a fixed interval."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | Any,
        settings: Settings | None = None,
        *,
        redis_client: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.session_maker = session_maker
        self._redis_client = redis_client
        self._running = False
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None
        self._last_result: CleanupResult | None = None

    @property
    def interval_minutes(self) -> int:
        return self.settings.approval_cleanup_interval_minutes

    async def _acquire_dispatch_lock(self) -> bool:
        """
        Acquire a distributed dispatch lock so only one API instance runs each tick.
        """
        redis = self._redis_client if self._redis_client is not None else get_redis_client()
        if redis is None:
            return True

        lock_key = f"{self.settings.ADMIN_SESSION_KEY_PREFIX}:scheduler:dispatch-lock:{CLEANUP_JOB_ID}"
        ttl_seconds = max(60, self.interval_minutes * 60 - 60)
        try:
            acquired = await redis.set(lock_key, "1", ex=ttl_seconds, nx=True)
            if not acquired:
                logger.info("scheduler_dispatch_skipped_lock_held", job=CLEANUP_JOB_ID)
                return False
            return True
        except Exception as exc:
            # Fail-open: if lock infrastructure fails, keep the sweep running.
            logger.warning(
                "scheduler_dispatch_lock_error", job=CLEANUP_JOB_ID, error=str(exc)
            )
            return True

    async def run_cleanup(self) -> Optional[CleanupResult]:
        """One cleanup tick. Never raises; failures are logged and counted."""
        if self._running:
            ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL.labels(status="skipped_running").inc()
            logger.info("admin_approval_cleanup_skipped_running")
            return None

        self._running = True
        try:
            if not await self._acquire_dispatch_lock():
                ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL.labels(status="skipped_locked").inc()
                return None

            async with self.session_maker() as db:
                service = ApprovalWorkflowService.from_settings(db, self.settings)
                result = await service.cleanup_old()

            ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL.labels(status="success").inc()
            self._last_run_success = True
            self._last_result = result
            return result
        except Exception as exc:
            ADMIN_APPROVAL_CLEANUP_RUNS_TOTAL.labels(status="failure").inc()
            self._last_run_success = False
            logger.error("admin_approval_cleanup_failed", error=str(exc), exc_info=True)
            return None
        finally:
            self._last_run_time = datetime.now(timezone.utc).isoformat()
            self._running = False

    def start(self) -> None:
        """Schedules the sweep (first run immediately) and starts APScheduler."""
        self.scheduler.add_job(
            self.run_cleanup,
            trigger=IntervalTrigger(minutes=self.interval_minutes, timezone="UTC"),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.start()
        logger.info("admin_approval_cleanup_scheduled", interval_minutes=self.interval_minutes)

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=False)

    def get_status(self) -> Dict[str, Any]:
        last = self._last_result
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "last_expired_count": last.expired_count if last else None,
            "last_deleted_count": last.deleted_count if last else None,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }
