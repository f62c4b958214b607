"""IdempotencyGuard: deduplicate handler execution by event id."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from .exceptions import TransportError
from .ports import DedupStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from redis.asyncio import Redis

    from .ports import IDedupStore

logger = logging.getLogger("agora_events.idempotency")

_IN_PROGRESS = "in-progress"
_SUCCEEDED = "succeeded"

# Compare-and-delete so a succeeded record is never dropped by a late release.
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class InMemoryDedupStore:
    """Process-local dedup records with lazy expiry.

    Safe under concurrent asyncio workers: every operation runs under one
    lock, so check-and-mark is atomic.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._records: dict[str, tuple[DedupStatus, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock if clock is not None else time.monotonic

    def _live(self, key: str, now: float) -> DedupStatus | None:
        record = self._records.get(key)
        if record is None:
            return None
        status, expires_at = record
        if expires_at <= now:
            del self._records[key]
            return None
        return status

    async def check_and_mark(
        self, key: str, in_progress_ttl: timedelta
    ) -> DedupStatus:
        async with self._lock:
            now = self._clock()
            status = self._live(key, now)
            if status is not None:
                return status
            self._records[key] = (
                DedupStatus.IN_PROGRESS,
                now + in_progress_ttl.total_seconds(),
            )
            return DedupStatus.NEW

    async def mark_succeeded(self, key: str, retention: timedelta) -> None:
        async with self._lock:
            self._records[key] = (
                DedupStatus.SUCCEEDED,
                self._clock() + retention.total_seconds(),
            )

    async def release(self, key: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record[0] is DedupStatus.IN_PROGRESS:
                del self._records[key]

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._records.items() if exp <= now]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class RedisDedupStore:
    """Distributed dedup records in Redis.

    ``SET key in-progress NX EX ttl`` is the atomic check-and-mark; Redis
    key expiry does the eviction, so ``purge_expired`` has nothing to do.
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "agora:dedup") -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix

    def _key(self, event_id: str) -> str:
        return f"{self._key_prefix}:{event_id}"

    async def check_and_mark(
        self, key: str, in_progress_ttl: timedelta
    ) -> DedupStatus:
        redis_key = self._key(key)
        try:
            # The record may expire between SET NX and GET; retry once then.
            for _ in range(2):
                created = await self._redis.set(
                    redis_key, _IN_PROGRESS, nx=True, ex=in_progress_ttl
                )
                if created:
                    return DedupStatus.NEW
                value = await self._redis.get(redis_key)
                if value is not None:
                    text = value.decode() if isinstance(value, bytes) else str(value)
                    return DedupStatus(text)
        except (RedisError, OSError) as e:
            raise TransportError(f"Dedup store unavailable: {e}") from e
        return DedupStatus.IN_PROGRESS

    async def mark_succeeded(self, key: str, retention: timedelta) -> None:
        try:
            await self._redis.set(self._key(key), _SUCCEEDED, ex=retention)
        except (RedisError, OSError) as e:
            raise TransportError(f"Dedup store unavailable: {e}") from e

    async def release(self, key: str) -> None:
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), _IN_PROGRESS)
        except (RedisError, OSError) as e:
            raise TransportError(f"Dedup store unavailable: {e}") from e

    async def purge_expired(self) -> int:
        return 0


class IdempotencyGuard:
    """Deduplicate deliveries by event id to prevent double execution.

    The guard narrows duplicate execution but cannot eliminate it: a
    ``succeeded`` record evicted before a late redelivery lets the event run
    once more, so handlers should still be idempotent at the business level.
    """

    def __init__(
        self,
        store: IDedupStore | None = None,
        *,
        retention: timedelta = timedelta(days=1),
        in_progress_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        """Configure the guard.

        Args:
            store: Backing store; defaults to an in-memory store.
            retention: How long a ``succeeded`` record is kept.
            in_progress_ttl: How long an ``in-progress`` record may block
                redeliveries (covers workers that died mid-handler).
        """
        self._store = store if store is not None else InMemoryDedupStore()
        self._retention = retention
        self._in_progress_ttl = in_progress_ttl

    async def check_and_mark(self, event_id: str) -> DedupStatus:
        """Atomically check *event_id* and mark it in-progress when new."""
        status = await self._store.check_and_mark(event_id, self._in_progress_ttl)
        if status is not DedupStatus.NEW:
            logger.debug("Event %s already %s", event_id, status.value)
        return status

    async def mark_succeeded(self, event_id: str) -> None:
        await self._store.mark_succeeded(event_id, self._retention)

    async def release(self, event_id: str) -> None:
        """Clear the in-progress marker after a failed attempt."""
        await self._store.release(event_id)

    async def sweep(self) -> int:
        removed = await self._store.purge_expired()
        if removed:
            logger.debug("Evicted %d expired dedup records", removed)
        return removed

    async def run_sweeper(self, interval: float = 60.0) -> None:
        """Background eviction loop; cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except TransportError:
                logger.warning("Dedup sweep failed", exc_info=True)
