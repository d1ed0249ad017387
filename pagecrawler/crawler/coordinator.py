"""
Crawl coordinator: admission, bounded concurrency, rate limiting and
exactly-once completion signalling.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from .admission import AdmissionFilter
from .renderer import Renderer, RenderError
from ..storage.artifacts import ArtifactStore, ArtifactStoreError
from ..storage.batcher import PersistenceBatcher
from ..storage.database import PageStore, StoreError
from ..storage.dedup import DedupGate
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor

CompletionCallback = Callable[[str], Awaitable[None]]


class CrawlOutcome(Enum):
    """Terminal result of one admitted URL."""
    SUCCESS = 'success'
    REJECTED = 'rejected'
    USELESS = 'useless'
    FAILED = 'failed'


@dataclass
class CrawlStats:
    """Counters for coordinator activity."""
    start_time: float
    admitted: int = 0
    completed: int = 0
    succeeded: int = 0
    rejected: int = 0
    useless: int = 0
    failed: int = 0
    links_found: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.completed / elapsed_minutes if elapsed_minutes > 0 else 0


class RateLimiter:
    """Allows at most ``max_events`` acquisitions in any rolling ``window`` seconds."""

    def __init__(self, max_events: int, window: float = 60.0):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.max_events = max_events
        self.window = window
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._events and now - self._events[0] >= self.window:
                    self._events.popleft()

                if len(self._events) < self.max_events:
                    self._events.append(now)
                    return

                await asyncio.sleep(self.window - (now - self._events[0]))


class CrawlCoordinator:
    """
    Admits URLs for crawling and signals completion exactly once per URL.

    Every URL that ``admit`` accepts ends in exactly one call to
    ``on_complete``, whether the page was stored, rejected by the admission
    filter, judged useless or failed to render. Rejected, useless and failed
    pages are marked inactive in the store; failures are not retried here.
    """

    def __init__(self,
                 renderer: Renderer,
                 artifact_store: ArtifactStore,
                 batcher: PersistenceBatcher,
                 dedup_gate: DedupGate,
                 store: PageStore,
                 admission_filter: AdmissionFilter,
                 on_complete: CompletionCallback,
                 max_concurrency: int = 3,
                 max_requests_per_minute: int = 50,
                 request_handler_timeout: float = 30.0,
                 min_content_length: int = 50,
                 rate_window: float = 60.0,
                 monitor: Optional[CrawlerMonitor] = None):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.renderer = renderer
        self.artifact_store = artifact_store
        self.batcher = batcher
        self.dedup_gate = dedup_gate
        self.store = store
        self.admission_filter = admission_filter
        self.on_complete = on_complete
        self.max_concurrency = max_concurrency
        self.request_handler_timeout = request_handler_timeout
        self.min_content_length = min_content_length
        self.monitor = monitor
        self.logger = get_crawler_logger(__name__)

        self._slots = asyncio.Semaphore(max_concurrency)
        self._rate_limiter = RateLimiter(max_requests_per_minute, rate_window)
        self._crawl_tasks: Set[asyncio.Task] = set()
        self._slot_holders: Set[asyncio.Task] = set()
        self._discovery_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        self.stop_reason: Optional[str] = None
        self.stats = CrawlStats(start_time=time.time())

    @property
    def in_flight(self) -> int:
        """Number of crawls currently holding a slot."""
        return len(self._crawl_tasks)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def admit(self, url: str) -> bool:
        """
        Accept ``url`` for crawling.

        Waits for a free slot and for the rate limiter before the crawl task
        starts. Returns False if the coordinator was stopped before the URL
        could be admitted; such URLs are never completed.
        """
        if self._stopped:
            self.logger.info(f"Not admitting {url}: coordinator stopped ({self.stop_reason})")
            return False

        if not self.admission_filter.is_admissible(url):
            self._count_admitted()
            await self._finish_rejected(url)
            return True

        await self._slots.acquire()
        try:
            await self._rate_limiter.acquire()
        except BaseException:
            self._slots.release()
            raise

        if self._stopped:
            self._slots.release()
            self.logger.info(f"Not admitting {url}: coordinator stopped ({self.stop_reason})")
            return False

        self._count_admitted()
        task = asyncio.create_task(self._crawl(url), name=f"crawl:{url}")
        self._crawl_tasks.add(task)
        self._slot_holders.add(task)
        task.add_done_callback(self._crawl_done)
        self._report_in_flight()
        return True

    def stop(self, reason: str):
        """Refuse further admissions. In-flight crawls keep running."""
        if not self._stopped:
            self._stopped = True
            self.stop_reason = reason
            self.logger.info(f"Coordinator stopped: {reason} ({self.in_flight} crawls in flight)")

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight crawls and discovery tasks.

        Returns False if they did not all finish within ``timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            # Finishing crawls may spawn discovery tasks, so re-check after each wait
            pending = {task for task in self._crawl_tasks | self._discovery_tasks if not task.done()}
            if not pending:
                return True

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(pending, timeout=remaining)

    async def cancel_all(self):
        """Abandon outstanding work. Abandoned crawls are not completed."""
        tasks = self._crawl_tasks | self._discovery_tasks
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.warning(f"Abandoned {len(tasks)} unfinished crawl tasks")

    async def _crawl(self, url: str):
        outcome = CrawlOutcome.FAILED
        try:
            outcome = await self._process(url)
        except asyncio.CancelledError:
            self.logger.warning(f"Crawl of {url} abandoned before completion")
            raise
        except Exception as e:
            self.logger.error(f"Error processing {url}: {e}", exc_info=True)

        self._release_slot(asyncio.current_task())
        self._record_outcome(url, outcome)
        await self._complete(url)

    async def _process(self, url: str) -> CrawlOutcome:
        try:
            result = await asyncio.wait_for(self.renderer.render(url), timeout=self.request_handler_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Request handler timed out after {self.request_handler_timeout}s for {url}")
            await self._deactivate(url)
            return CrawlOutcome.FAILED
        except RenderError as e:
            self.logger.error(f"Failed to render {url}: {e}")
            await self._deactivate(url)
            return CrawlOutcome.FAILED
        except Exception as e:
            self.logger.error(f"Unexpected error rendering {url}: {e}", exc_info=True)
            await self._deactivate(url)
            return CrawlOutcome.FAILED

        if self.monitor:
            self.monitor.record_render_time(result.render_time)

        if result.is_useless(self.min_content_length):
            self.logger.info(f"Page {url} has less than {self.min_content_length} characters of text")
            await self._deactivate(url)
            return CrawlOutcome.USELESS

        try:
            locator = await self.artifact_store.store(url, result.html, result.screenshot)
        except ArtifactStoreError as e:
            self.logger.error(f"Failed to store page {url}: {e}")
            await self._deactivate(url)
            return CrawlOutcome.FAILED

        try:
            await self.batcher.enqueue(url, locator)
        except StoreError as e:
            # The record stays queued in the batcher for the next flush
            self.logger.error(f"Flush triggered by {url} failed: {e}")

        self._spawn_discovery(url, result.links)
        return CrawlOutcome.SUCCESS

    async def _finish_rejected(self, url: str):
        try:
            await self._deactivate(url)
        finally:
            self._record_outcome(url, CrawlOutcome.REJECTED)
            await self._complete(url)

    async def _deactivate(self, url: str):
        try:
            await self.store.mark_inactive(url)
        except Exception as e:
            self.logger.error(f"Failed to mark {url} inactive: {e}")

    async def _complete(self, url: str):
        self.stats.completed += 1
        if self.monitor:
            self.monitor.record_completion()

        try:
            await self.on_complete(url)
        except Exception as e:
            self.logger.error(f"Completion callback failed for {url}: {e}")

    def _spawn_discovery(self, source_url: str, links: List[str]):
        candidates = [link for link in links if self.admission_filter.is_admissible(link)]
        self.stats.links_found += len(links)
        self.logger.info(
            f"Found {len(links)} same-domain links on {source_url}, {len(candidates)} admissible"
        )
        if not candidates:
            return

        task = asyncio.create_task(self._discover(candidates), name=f"discover:{source_url}")
        self._discovery_tasks.add(task)
        task.add_done_callback(self._discovery_tasks.discard)

    async def _discover(self, links: List[str]):
        for link in links:
            try:
                await self.dedup_gate.check_and_insert(link)
            except Exception as e:
                self.logger.error(f"Error checking/inserting URL {link}: {e}")

    def _release_slot(self, task: Optional[asyncio.Task]):
        # A task gives back its slot once, whether it finished or was cancelled before starting
        if task in self._slot_holders:
            self._slot_holders.discard(task)
            self._slots.release()

    def _crawl_done(self, task: asyncio.Task):
        self._release_slot(task)
        self._crawl_tasks.discard(task)
        self._report_in_flight()

    def _count_admitted(self):
        self.stats.admitted += 1
        if self.monitor:
            self.monitor.record_admitted()

    def _record_outcome(self, url: str, outcome: CrawlOutcome):
        if outcome is CrawlOutcome.SUCCESS:
            self.stats.succeeded += 1
        elif outcome is CrawlOutcome.REJECTED:
            self.stats.rejected += 1
        elif outcome is CrawlOutcome.USELESS:
            self.stats.useless += 1
        else:
            self.stats.failed += 1

        if self.monitor:
            self.monitor.record_outcome(outcome.value)
        self.logger.log_url_event(
            logging.DEBUG, url, f"Crawl finished: {outcome.value}",
            extra={'outcome': outcome.value},
        )

    def _report_in_flight(self):
        if self.monitor:
            self.monitor.update_in_flight(len(self._crawl_tasks))

    def get_stats(self) -> Dict:
        return {
            'admitted': self.stats.admitted,
            'completed': self.stats.completed,
            'succeeded': self.stats.succeeded,
            'rejected': self.stats.rejected,
            'useless': self.stats.useless,
            'failed': self.stats.failed,
            'links_found': self.stats.links_found,
            'in_flight': self.in_flight,
            'pages_per_minute': self.stats.pages_per_minute,
        }
