"""
Write-behind batching of completed pages into the page store.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from .database import PageRecord, PageStore, StoreError
from ..utils.monitoring import CrawlerMonitor


class BatcherError(Exception):
    """Base exception for persistence batcher failures."""
    pass


class DrainTimeoutError(BatcherError):
    """Raised when a drain does not finish within its budget."""
    pass


class PersistenceBatcher:
    """
    Buffers page records and writes them to the store in bounded batches.

    All access to the batch window happens under a single lock. An enqueue
    that fills the window flushes before releasing the lock, so at most one
    flush runs at a time and no two flushes ever see overlapping prefixes.

    A failed chunk stays at the head of the window and is retried by the
    next flush; the error is raised to whoever triggered the flush.
    """

    def __init__(self, store: PageStore, chunk_size: int = 100, max_queue_size: int = 1000,
                 monitor: Optional[CrawlerMonitor] = None):
        if chunk_size < 1 or max_queue_size < 1:
            raise ValueError("chunk_size and max_queue_size must be at least 1")

        self.store = store
        self.chunk_size = chunk_size
        self.max_queue_size = max_queue_size
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self._window: List[PageRecord] = []
        self._lock = asyncio.Lock()
        self.total_upserted = 0

    @property
    def pending(self) -> int:
        """Number of records waiting to be flushed."""
        return len(self._window)

    def pending_records(self) -> List[PageRecord]:
        """Copy of the current window, oldest first."""
        return list(self._window)

    async def enqueue(self, url: str, content_locator: str):
        """Add a completed page; flushes first if the window is full."""
        async with self._lock:
            self._window.append(PageRecord.for_url(url, content_locator))
            self.logger.debug(f"Upsert enqueued for {url}")
            self._report_window()

            if len(self._window) >= self.max_queue_size:
                self.logger.info(
                    f"Upsert queue size {len(self._window)} reached limit of "
                    f"{self.max_queue_size}, flushing"
                )
                await self._flush_locked()

    async def flush(self):
        """Flush the whole window now."""
        async with self._lock:
            await self._flush_locked()

    async def drain(self, timeout: Optional[float] = 30.0):
        """
        Flush everything, giving up after ``timeout`` seconds.

        Waiting for the lock counts against the budget. On timeout the
        in-progress flush is cancelled before it commits its window update,
        so unflushed records stay queued.

        Raises:
            DrainTimeoutError: the budget elapsed
            StoreError: a chunk failed to upsert
        """
        start = time.monotonic()
        if timeout is None or timeout <= 0:
            await self.flush()
        else:
            try:
                await asyncio.wait_for(self.flush(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise DrainTimeoutError(
                    f"Timeout after {timeout}s while draining upsert queue "
                    f"({len(self._window)} records pending)"
                ) from e

        duration_ms = (time.monotonic() - start) * 1000
        self.logger.info(f"Upsert queue drained in {duration_ms:.0f} ms")

    async def _flush_locked(self):
        """Write the window chunk by chunk. Caller must hold the lock."""
        if not self._window:
            self.logger.debug("Upsert queue is empty, nothing to flush")
            return

        while self._window:
            chunk = self._window[:self.chunk_size]

            # Last occurrence of a URL wins
            unique: Dict[str, PageRecord] = {}
            for record in chunk:
                unique.pop(record.url, None)
                unique[record.url] = record
            deduped = list(unique.values())

            if len(deduped) != len(chunk):
                self.logger.debug(f"Deduplicated {len(chunk) - len(deduped)} URLs in chunk before upsert")

            try:
                await self.store.upsert_pages(deduped)
            except StoreError as e:
                self.logger.error(f"Error upserting {len(deduped)} rows, chunk kept for retry: {e}")
                if self.monitor:
                    self.monitor.record_flush_failure()
                raise

            del self._window[:len(chunk)]
            self.total_upserted += len(deduped)
            self._report_window()
            if self.monitor:
                self.monitor.record_flush(len(deduped))

            self.logger.info(
                f"Upserted {len(deduped)} rows (total upserted: {self.total_upserted})"
            )

    def _report_window(self):
        if self.monitor:
            self.monitor.update_window_size(len(self._window))

    def get_stats(self) -> Dict[str, int]:
        return {
            'pending': len(self._window),
            'total_upserted': self.total_upserted,
        }
