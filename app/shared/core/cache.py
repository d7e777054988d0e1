"""
Two-tier TTL key-value store.

Admin sessions, their indexes and scheduler locks live in a shared TTL store
(Redis in any multi-process deployment). A bounded, TTL-aware in-process store
serves single-instance development/test runs and can back the shared tier as
an explicit fallback for non-security data.

Trust-critical consumers (sessions) build the tiered store with
``allow_fallback_reads=False``: when Redis is unreachable they observe
``StoreUnavailableError`` and fail closed instead of reading stale local state.
"""

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Optional, Protocol, cast

import structlog
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import ConfigurationError, StoreUnavailableError

logger = structlog.get_logger()

_redis_client: Redis | None = None


class TTLStore(Protocol):
    """Minimal async key-value contract shared by every tier."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...


class LocalTTLStore:
    """
    Bounded in-process store with per-key expiry.

    Entries are evicted least-recently-used once ``max_entries`` is reached and
    purged lazily when read after their deadline.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, deadline = entry
            if deadline <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            await self.delete(key)
            return
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)
            self._entries.move_to_end(key)
            self._purge_expired()
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("local_ttl_store_evicted", key=evicted)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, deadline) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]


class RedisTTLStore:
    """Shared tier; every transport failure surfaces as ``StoreUnavailableError``."""

    def __init__(self, client: Redis) -> None:
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            data = await self.client.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("redis_store_get_error", key=key, error=str(exc))
            raise StoreUnavailableError("Shared session store is unavailable", store="redis") from exc
        if data is None:
            return None
        if isinstance(data, bytes):
            try:
                return data.decode("utf-8")
            except UnicodeDecodeError as exc:
                logger.warning("redis_store_invalid_encoding", key=key, error=str(exc))
                return None
        return str(data)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            if ttl_seconds <= 0:
                await self.client.delete(key)
                return
            await self.client.set(key, value, ex=int(ttl_seconds))
        except (RedisError, OSError) as exc:
            logger.warning("redis_store_set_error", key=key, error=str(exc))
            raise StoreUnavailableError("Shared session store is unavailable", store="redis") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys) or 0)
        except (RedisError, OSError) as exc:
            logger.warning("redis_store_delete_error", keys=list(keys), error=str(exc))
            raise StoreUnavailableError("Shared session store is unavailable", store="redis") from exc


class TieredTTLStore:
    """
    Primary shared store composed with a local fallback.

    With ``allow_fallback_reads`` the local tier mirrors successful writes and
    answers reads while the primary is down. Without it the local tier is never
    consulted and primary failures propagate to the caller.
    """

    def __init__(
        self,
        primary: TTLStore,
        fallback: LocalTTLStore,
        *,
        allow_fallback_reads: bool = False,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.allow_fallback_reads = allow_fallback_reads

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.primary.get(key)
        except StoreUnavailableError:
            if not self.allow_fallback_reads:
                raise
            logger.warning("ttl_store_fallback_read", key=key)
            return await self.fallback.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.primary.set(key, value, ttl_seconds)
        if self.allow_fallback_reads:
            await self.fallback.set(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        # Local copies go first so a failed primary delete never leaves them readable.
        await self.fallback.delete(*keys)
        return await self.primary.delete(*keys)


def get_redis_client() -> Redis | None:
    """Lazy initialization of the shared Redis client."""
    global _redis_client
    settings = get_settings()
    # Tests use the in-process tier unless explicitly opted in.
    if settings.TESTING and not settings.ALLOW_REDIS_IN_TESTS:
        return None
    if not settings.REDIS_URL:
        return None

    # Ensure the client is tied to the current running loop
    if _redis_client is not None:
        try:
            loop = asyncio.get_running_loop()
            if getattr(_redis_client, "_loop", None) not in (None, loop):
                _redis_client = None
        except RuntimeError:
            pass

    if _redis_client is None:
        redis_from_url = cast(Callable[..., Redis], from_url)
        _redis_client = redis_from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("redis_client_created")
    return _redis_client


def build_ttl_store(
    settings: Settings | None = None,
    *,
    allow_fallback_reads: bool = False,
    redis_client: Any = None,
) -> TTLStore:
    """
    Compose the store for this process.

    Redis-backed tier when REDIS_URL is configured; the bounded local tier
    otherwise. Staging/production refuse to start without Redis unless the
    break-glass flag is set.
    """
    settings = settings or get_settings()
    local = LocalTTLStore(max_entries=settings.LOCAL_CACHE_MAX_ENTRIES)
    client = redis_client if redis_client is not None else get_redis_client()

    if client is None:
        if settings.is_production_like and not settings.TESTING:
            if not settings.ALLOW_IN_MEMORY_SESSION_STORE:
                raise ConfigurationError(
                    "A shared Redis store is required for admin sessions in staging/production."
                )
            logger.warning(
                "ttl_store_in_memory_break_glass",
                msg="REDIS_URL is not set. Admin sessions are process-local and "
                "will not be shared across instances.",
            )
        else:
            logger.info("ttl_store_local", max_entries=settings.LOCAL_CACHE_MAX_ENTRIES)
        return local

    return TieredTTLStore(
        RedisTTLStore(client),
        local,
        allow_fallback_reads=allow_fallback_reads,
    )
