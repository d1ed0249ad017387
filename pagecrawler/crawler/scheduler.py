"""
Crawler scheduler that builds the crawl pipeline and drives one run.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

from .admission import AdmissionFilter
from .coordinator import CrawlCoordinator
from .renderer import Renderer, create_renderer
from ..storage.artifacts import ArtifactStore, create_artifact_store
from ..storage.batcher import PersistenceBatcher
from ..storage.database import PageStore, PostgresPageStore, StoreError
from ..storage.dedup import DedupGate
from ..utils.config import Config
from ..utils.monitoring import CrawlerMonitor
from ..workqueue.consumer import QueueError, QueueProvider, WorkQueueConsumer, create_queue_provider


class CrawlerScheduler:
    """
    Owns the crawl components and runs the pull → admit → ack loop.

    Queue messages are pulled while the admission budget lasts, handed to
    the coordinator, and acknowledged by the coordinator's completion
    callback.
    """

    def __init__(self, config: Config, monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self.store: Optional[PageStore] = None
        self.provider: Optional[QueueProvider] = None
        self.renderer: Optional[Renderer] = None
        self.artifact_store: Optional[ArtifactStore] = None

        self.batcher: Optional[PersistenceBatcher] = None
        self.dedup_gate: Optional[DedupGate] = None
        self.consumer: Optional[WorkQueueConsumer] = None
        self.coordinator: Optional[CrawlCoordinator] = None

        self.is_running = False
        self._pull_task: Optional[asyncio.Task] = None
        self._stop_reason: Optional[str] = None

    async def initialize(self):
        """Connect to the store and queue and start the renderer."""
        # Components are kept as they come up so close() can release them on failure
        try:
            self.store = PostgresPageStore(self.config.database)
            await self.store.initialize()

            self.provider = create_queue_provider(self.config.queue)
            await self.provider.initialize()

            self.renderer = create_renderer(self.config.crawler)
            await self.renderer.start()

            self.artifact_store = create_artifact_store(self.config.artifacts)
            await self.artifact_store.initialize()
        except Exception as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise

        self.attach(self.store, self.provider, self.renderer, self.artifact_store)
        self.logger.info("Crawler scheduler initialized successfully")

    def attach(self, store: PageStore, provider: QueueProvider, renderer: Renderer,
               artifact_store: ArtifactStore):
        """Wire the crawl pipeline around already-initialized capabilities."""
        crawler = self.config.crawler
        database = self.config.database

        self.store = store
        self.provider = provider
        self.renderer = renderer
        self.artifact_store = artifact_store

        self.batcher = PersistenceBatcher(
            store,
            chunk_size=database.chunk_size,
            max_queue_size=database.max_queue_size,
            monitor=self.monitor,
        )
        self.dedup_gate = DedupGate(store, monitor=self.monitor)
        self.consumer = WorkQueueConsumer(
            provider,
            budget=crawler.max_requests_per_crawl,
            wait_seconds=self.config.queue.wait_seconds,
            monitor=self.monitor,
        )
        self.coordinator = CrawlCoordinator(
            renderer=renderer,
            artifact_store=artifact_store,
            batcher=self.batcher,
            dedup_gate=self.dedup_gate,
            store=store,
            admission_filter=AdmissionFilter(crawler.allowed_domains),
            on_complete=self.consumer.ack,
            max_concurrency=crawler.max_concurrency,
            max_requests_per_minute=crawler.max_requests_per_minute,
            request_handler_timeout=crawler.request_handler_timeout,
            min_content_length=crawler.min_content_length,
            monitor=self.monitor,
        )

    async def seed(self, urls: Iterable[str]) -> int:
        """Register start URLs in the store and put them on the queue."""
        published = 0
        for url in urls:
            try:
                await self.dedup_gate.check_and_insert(url)
            except StoreError as e:
                self.logger.error(f"Failed to register seed URL {url}: {e}")
            await self.provider.publish(url)
            published += 1

        self.logger.info(f"Published {published} seed URLs to the queue")
        return published

    async def start_crawling(self, max_duration: Optional[float] = None) -> str:
        """
        Run until the admission budget is spent, ``max_duration`` elapses or
        ``stop_crawling`` is called. Returns the reason the run stopped.
        """
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return 'already running'

        self.is_running = True
        self._stop_reason = None
        stats_task = asyncio.create_task(self._stats_reporter())
        self._pull_task = asyncio.create_task(self._pull_loop())

        try:
            done, _ = await asyncio.wait({self._pull_task}, timeout=max_duration)
            if not done:
                self._stop_reason = 'run timeout'
                self.logger.info(f"Reached max duration: {max_duration} seconds")
                self._pull_task.cancel()
                await asyncio.gather(self._pull_task, return_exceptions=True)
            elif not self._pull_task.cancelled() and self._pull_task.exception():
                raise self._pull_task.exception()

            reason = self._stop_reason or 'stopped'
            self.coordinator.stop(reason)

            join_timeout = self.config.shutdown.join_timeout
            if not await self.coordinator.join(join_timeout):
                self.logger.warning(f"In-flight crawls did not finish within {join_timeout}s")
                await self.coordinator.cancel_all()

            self._log_final_stats()
            return reason
        finally:
            self.is_running = False
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)

    async def _pull_loop(self):
        while self.is_running:
            if self.consumer.exhausted:
                self._stop_reason = 'admission budget exhausted'
                self.logger.info(f"Reached max requests per crawl: {self.consumer.budget}")
                return

            try:
                items = await self.consumer.pull()
            except QueueError as e:
                self.logger.error(f"Error pulling from queue: {e}")
                await asyncio.sleep(1)
                continue

            for item in items:
                if not await self.coordinator.admit(item.url):
                    return

    def stop_crawling(self, reason: str):
        """Stop pulling and admitting; in-flight crawls are allowed to finish."""
        self.logger.info(f"Stopping crawler: {reason}")
        self._stop_reason = reason
        if self.coordinator:
            self.coordinator.stop(reason)
        if self._pull_task and not self._pull_task.done():
            self._pull_task.cancel()

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while True:
            await asyncio.sleep(self.config.crawler.stats_interval)
            self._log_current_stats()

    def _log_current_stats(self):
        stats = self.coordinator.get_stats()
        self.logger.info(
            f"Crawl Progress: "
            f"Admitted={stats['admitted']}, "
            f"Completed={stats['completed']}, "
            f"InFlight={stats['in_flight']}, "
            f"Failed={stats['failed']}, "
            f"PendingUpserts={self.batcher.pending}, "
            f"Rate={stats['pages_per_minute']:.1f} pages/min"
        )

    def _log_final_stats(self):
        stats = self.coordinator.get_stats()

        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"URLs admitted: {stats['admitted']}")
        self.logger.info(f"Completed: {stats['completed']}")
        self.logger.info(f"Stored: {stats['succeeded']}")
        self.logger.info(f"Rejected: {stats['rejected']}")
        self.logger.info(f"Useless: {stats['useless']}")
        self.logger.info(f"Failed: {stats['failed']}")
        self.logger.info(f"Elapsed: {self.coordinator.stats.elapsed_time:.2f} seconds")
        self.logger.info(f"Queue stats: {self.consumer.get_stats()}")
        self.logger.info(f"Discovery stats: {self.dedup_gate.get_stats()}")
        self.logger.info(f"Batcher stats: {self.batcher.get_stats()}")
        if self.monitor:
            self.logger.info(f"Metrics: {self.monitor.get_summary()['metrics']}")

    async def close(self):
        """Close all connections. Drain the batcher before calling this."""
        for name, component in (('renderer', self.renderer),
                                ('artifact store', self.artifact_store),
                                ('queue', self.provider),
                                ('page store', self.store)):
            if component is None:
                continue
            try:
                await component.close()
            except Exception as e:
                self.logger.error(f"Error closing {name}: {e}")

        self.logger.info("Crawler scheduler closed")

    def get_stats(self) -> Dict:
        stats = self.coordinator.get_stats() if self.coordinator else {}
        return {**stats, 'is_running': self.is_running}
