"""
Session persistence over the shared TTL store.

Records live under ``{prefix}:session:{id}``. Two indexes (global and
per-user) are JSON lists of session ids rewritten wholesale on mutation.
Index entries may outlive their records; ``list_from_index`` verifies
liveness and prunes dangling ids on read.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import ValidationError

from app.modules.sessions.domain.records import SessionRecord
from app.shared.core.cache import TTLStore
from app.shared.core.ops_metrics import ADMIN_SESSION_INDEX_PRUNED_TOTAL

logger = structlog.get_logger()


class SessionStore:
    def __init__(
        self,
        ttl_store: TTLStore,
        *,
        idle_timeout: timedelta,
        absolute_timeout: timedelta,
        key_prefix: str = "admin",
    ) -> None:
        self.ttl_store = ttl_store
        self.idle_timeout = idle_timeout
        self.absolute_timeout = absolute_timeout
        self.key_prefix = key_prefix

    # --- Keys ---

    def session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    @property
    def global_index_key(self) -> str:
        return f"{self.key_prefix}:sessions:index:all"

    def user_index_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:sessions:index:user:{user_id}"

    # --- Records ---

    def deadline(self, record: SessionRecord) -> datetime:
        """Earliest of the idle, absolute and explicit expiry clocks."""
        candidates = [
            record.last_seen + self.idle_timeout,
            record.created_at + self.absolute_timeout,
        ]
        if record.expires_at is not None:
            candidates.append(record.expires_at)
        return min(candidates)

    def ttl_seconds(self, record: SessionRecord, now: datetime) -> int:
        remaining = (self.deadline(record) - now).total_seconds()
        if remaining <= 0:
            return 0
        return max(1, math.ceil(remaining))

    async def put(self, record: SessionRecord, now: datetime) -> bool:
        """
        Write the record with a freshly computed TTL.

        Returns False when the record has already expired; the key is then
        deleted and the caller is responsible for dropping index entries.
        """
        ttl = self.ttl_seconds(record, now)
        key = self.session_key(record.id)
        if ttl <= 0:
            await self.ttl_store.delete(key)
            return False
        await self.ttl_store.set(key, record.model_dump_json(by_alias=True), ttl)
        return True

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        if not session_id:
            return None
        raw = await self.ttl_store.get(self.session_key(session_id))
        if raw is None:
            return None
        try:
            return SessionRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "admin_session_record_malformed",
                session_id=session_id,
                error=str(exc),
            )
            return None

    async def delete(self, session_id: str) -> bool:
        return await self.ttl_store.delete(self.session_key(session_id)) > 0

    # --- Indexes ---

    async def _read_index(self, index_key: str) -> list[str]:
        raw = await self.ttl_store.get(index_key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("admin_session_index_malformed", index_key=index_key)
            return []
        if not isinstance(data, list):
            return []
        ids: list[str] = []
        for item in data:
            if isinstance(item, str) and item and item not in ids:
                ids.append(item)
        return ids

    async def _write_index(self, index_key: str, ids: list[str]) -> None:
        if not ids:
            await self.ttl_store.delete(index_key)
            return
        ttl = math.ceil(self.absolute_timeout.total_seconds())
        await self.ttl_store.set(index_key, json.dumps(ids, separators=(",", ":")), ttl)

    async def add_to_index(self, index_key: str, session_id: str) -> None:
        ids = await self._read_index(index_key)
        if session_id in ids:
            # Still rewritten so the index TTL tracks the newest session.
            await self._write_index(index_key, ids)
            return
        ids.append(session_id)
        await self._write_index(index_key, ids)

    async def remove_from_index(self, index_key: str, session_id: str) -> None:
        ids = await self._read_index(index_key)
        if session_id not in ids:
            return
        await self._write_index(index_key, [item for item in ids if item != session_id])

    async def list_from_index(self, index_key: str) -> list[SessionRecord]:
        ids = await self._read_index(index_key)
        records: list[SessionRecord] = []
        dangling: list[str] = []
        for session_id in ids:
            record = await self.get(session_id)
            if record is None:
                dangling.append(session_id)
                continue
            records.append(record)

        if dangling:
            await self._write_index(index_key, [item for item in ids if item not in dangling])
            ADMIN_SESSION_INDEX_PRUNED_TOTAL.inc(len(dangling))
            logger.info(
                "admin_session_index_pruned",
                index_key=index_key,
                pruned=len(dangling),
            )

        records.sort(key=lambda record: record.last_seen, reverse=True)
        return records
