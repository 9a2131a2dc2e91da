"""UsageMeter: per-key usage counters, updated off the request path.

record_use() is synchronous: it puts (key_id, timestamp) on an in-process
asyncio.Queue and returns. The update is therefore queued before the resolver
hands the principal to the handler, but the response never waits for the
write. A single background worker drains the queue and applies one atomic
``usage_count = usage_count + 1`` UPDATE per entry through the KeyStore.

Write failures are logged and swallowed; they never reach the caller and
never stop the worker. close() drains outstanding updates at shutdown.

The meter also exposes each key's stored RateLimitPolicy for an external
throttler. Nothing here throttles requests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from parcelgate.auth.models import RateLimitPolicy, utcnow
from parcelgate.auth.store import KeyStore
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)


class UsageMeter:
    """Fire-and-forget usage recorder backed by a KeyStore.

    Usage:
        meter = UsageMeter(store)
        meter.record_use(record.id)   # inside a request; returns immediately
        await meter.flush()           # tests: wait until writes are applied
        await meter.close()           # shutdown: drain, then stop the worker
    """

    def __init__(self, store: KeyStore) -> None:
        self._store = store
        self._queue: Optional[asyncio.Queue[tuple[str, datetime]]] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self.applied_count: int = 0
        self.failed_count: int = 0

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the worker. Must be called from a running event loop. Idempotent."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="parcelgate-usage-meter")

    async def flush(self) -> None:
        """Wait until every queued update has been applied (or has failed)."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Drain outstanding updates, then stop the worker."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.debug(
            "usage_meter_closed",
            applied=self.applied_count,
            failed=self.failed_count,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ── Recording ─────────────────────────────────────────────────────────────

    def record_use(self, key_id: str, used_at: Optional[datetime] = None) -> None:
        """Queue one usage increment for ``key_id``. Never blocks, never raises."""
        self.start()
        assert self._queue is not None
        self._queue.put_nowait((key_id, used_at or utcnow()))

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            key_id, used_at = await queue.get()
            try:
                found = await self._store.record_usage(key_id, used_at)
                if found:
                    self.applied_count += 1
                else:
                    logger.debug("usage_update_skipped_missing_key", key_id=key_id)
            except Exception as exc:
                self.failed_count += 1
                logger.warning(
                    "usage_update_failed",
                    key_id=key_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            finally:
                queue.task_done()

    # ── Policy lookup ─────────────────────────────────────────────────────────

    async def rate_limit_policy(self, key_id: str) -> Optional[RateLimitPolicy]:
        """Stored policy for ``key_id``, or None when the key has none or is unknown."""
        record = await self._store.get(key_id)
        return record.rate_limit if record is not None else None
