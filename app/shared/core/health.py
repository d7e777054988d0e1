"""
Health checks for the admin trust boundary.

Covers the approvals database, the session TTL store and the approval
cleanup scheduler.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.core.cache import TTLStore
from app.shared.core.config import get_settings

logger = structlog.get_logger()

HEALTH_PROBE_PREFIX = "health:probe"


class HealthService:
    """Aggregates component checks into a single status payload."""

    def __init__(
        self,
        db: AsyncSession,
        ttl_store: TTLStore | None = None,
        scheduler: Any = None,
    ) -> None:
        self.db = db
        self.ttl_store = ttl_store
        self.scheduler = scheduler

    async def check_all(self) -> Dict[str, Any]:
        database, session_store = await asyncio.gather(
            self._check_database(), self._check_session_store()
        )
        scheduler = self._check_scheduler()

        if database["status"] == "down":
            overall = "unhealthy"
        elif session_store["status"] == "down":
            # Session reads fail closed, so admin traffic is refused.
            overall = "unhealthy"
        elif scheduler["status"] == "stopped":
            overall = "degraded"
        else:
            overall = "healthy"

        settings = get_settings()
        health = {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": database,
            "session_store": session_store,
            "scheduler": scheduler,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
        }

        if overall == "unhealthy":
            logger.error("health_check_failed", health_data=health)
        elif overall == "degraded":
            logger.warning("health_check_degraded", health_data=health)
        else:
            logger.debug("health_check_passed", status=overall)
        return health

    async def _check_database(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            await self.db.execute(text("SELECT 1"))
            latency = (time.perf_counter() - start) * 1000
            return {"status": "up", "latency_ms": round(latency, 2)}
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return {"status": "down", "error": str(e), "component": "database"}

    async def _check_session_store(self) -> Dict[str, Any]:
        if self.ttl_store is None:
            return {"status": "disabled", "message": "Session store not configured"}

        probe_key = f"{HEALTH_PROBE_PREFIX}:{uuid.uuid4().hex}"
        start = time.perf_counter()
        try:
            await self.ttl_store.set(probe_key, "ok", 10)
            value = await self.ttl_store.get(probe_key)
            await self.ttl_store.delete(probe_key)
        except Exception as e:
            logger.error("session_store_health_check_failed", error=str(e))
            return {"status": "down", "error": str(e), "component": "session_store"}

        if value != "ok":
            return {"status": "down", "message": "Session store set/get failed"}
        latency = (time.perf_counter() - start) * 1000
        return {
            "status": "up",
            "backend": type(self.ttl_store).__name__,
            "latency_ms": round(latency, 2),
        }

    def _check_scheduler(self) -> Dict[str, Any]:
        if self.scheduler is None:
            return {"status": "disabled"}
        status = self.scheduler.get_status()
        return {"status": "running" if status["running"] else "stopped", **status}
