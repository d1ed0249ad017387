# File: tests/conftest.py
import asyncio
import dataclasses
import itertools
from collections import deque
from typing import Dict, Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from pagecrawler.crawler.admission import AdmissionFilter
from pagecrawler.crawler.coordinator import CrawlCoordinator
from pagecrawler.crawler.renderer import Renderer, RenderError, RenderResult
from pagecrawler.storage.artifacts import ArtifactStore, ArtifactStoreError
from pagecrawler.storage.batcher import PersistenceBatcher
from pagecrawler.storage.database import UNCRAWLED_LOCATOR, PageRecord, PageStore, StoreError
from pagecrawler.storage.dedup import DedupGate
from pagecrawler.utils.config import ConfigManager
from pagecrawler.utils.urls import safe_file_name
from pagecrawler.workqueue.consumer import QueueError, QueueProvider, WorkItem

ALLOWED_DOMAIN = "shop.example"
LONG_TEXT = "Plenty of product description text for this page. " * 4


class FakePageStore(PageStore):
    """In-memory page store that enforces the unique url key."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.rows: Dict[str, PageRecord] = {}
        self.upserted_chunks: List[List[PageRecord]] = []
        self.inserted: List[str] = []
        self.insert_calls = 0
        self.inactive: List[str] = []
        self.fail_upserts = 0
        self.fail_inserts = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def initialize(self):
        pass

    async def upsert_pages(self, records):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            if self.fail_upserts:
                self.fail_upserts -= 1
                raise StoreError("connection reset by peer")

            urls = [record.url for record in records]
            if len(set(urls)) != len(urls):
                raise StoreError("ON CONFLICT DO UPDATE command cannot affect row a second time")

            for record in records:
                self.rows[record.url] = dataclasses.replace(record, active=True)
            self.upserted_chunks.append(list(records))
            return len(records)
        finally:
            self.in_flight -= 1

    async def insert_if_absent(self, url, content_locator=UNCRAWLED_LOCATOR):
        self.insert_calls += 1
        await asyncio.sleep(0)
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise StoreError("connection refused")
        if url in self.rows:
            return False
        self.rows[url] = PageRecord.for_url(url, content_locator)
        self.inserted.append(url)
        return True

    async def mark_inactive(self, url):
        self.inactive.append(url)
        if url not in self.rows:
            return False
        self.rows[url] = dataclasses.replace(self.rows[url], active=False)
        return True

    async def close(self):
        self.closed = True


class FakeQueueProvider(QueueProvider):
    """Queue provider backed by a deque; every delivery gets a fresh token."""

    def __init__(self, urls: Iterable[str] = (), max_batch: int = 10):
        self.max_batch = max_batch
        self.messages = deque()
        self.requested: List[int] = []
        self.deleted: List[str] = []
        self.published: List[str] = []
        self.fail_deletes = 0
        self.closed = False
        self._tokens = itertools.count(1)
        for url in urls:
            self.add(url)

    def add(self, url: str) -> str:
        token = f"receipt-{next(self._tokens)}"
        self.messages.append(WorkItem(url=url, delivery_token=token))
        return token

    async def receive(self, max_messages, wait_seconds):
        self.requested.append(max_messages)
        batch = []
        while self.messages and len(batch) < max_messages:
            batch.append(self.messages.popleft())
        if not batch:
            await asyncio.sleep(0.01)
        return batch

    async def delete(self, delivery_token):
        if self.fail_deletes:
            self.fail_deletes -= 1
            raise QueueError("throttled")
        self.deleted.append(delivery_token)

    async def publish(self, url):
        self.published.append(url)
        self.add(url)

    async def close(self):
        self.closed = True


class FakeRenderer(Renderer):
    """
    Renderer with scripted outcomes per URL: ``ok``, ``useless``, ``error``,
    ``crash`` or ``hang``.
    """

    def __init__(self, outcomes: Optional[Dict[str, str]] = None, default: str = 'ok',
                 delay: float = 0.0, links: Optional[Dict[str, List[str]]] = None):
        self.outcomes = outcomes or {}
        self.default = default
        self.delay = delay
        self.links = links or {}
        self.rendered: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def render(self, url):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.rendered.append(url)
            outcome = self.outcomes.get(url, self.default)
            if self.delay:
                await asyncio.sleep(self.delay)
            if outcome == 'hang':
                await asyncio.sleep(3600)
            if outcome == 'error':
                raise RenderError(f"net::ERR_CONNECTION_REFUSED at {url}")
            if outcome == 'crash':
                raise ValueError(f"URL has an invalid label: {url}")

            text = "Sold out" if outcome == 'useless' else LONG_TEXT
            return RenderResult(
                url=url,
                html=f"<html><body>{text}</body></html>",
                text=text,
                links=list(self.links.get(url, [])),
            )
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


def stub_playwright_page(url: str, status: int = 200, hrefs: Iterable[str] = ()) -> MagicMock:
    """A Playwright page double that loads ``url`` successfully."""
    page = MagicMock()
    page.url = url
    page.goto = AsyncMock(return_value=MagicMock(status=status))
    page.wait_for_load_state = AsyncMock()
    page.evaluate = AsyncMock()
    page.content = AsyncMock(return_value=f"<html><body>{LONG_TEXT}</body></html>")
    page.inner_text = AsyncMock(return_value=LONG_TEXT)
    page.eval_on_selector_all = AsyncMock(return_value=list(hrefs))
    page.screenshot = AsyncMock(return_value=b"\xff\xd8jpeg")
    return page


def stub_browser(page: Optional[MagicMock] = None) -> MagicMock:
    """A Playwright browser double whose contexts open ``page``."""
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    return browser


class FakeArtifactStore(ArtifactStore):
    def __init__(self):
        self.stored: Dict[str, str] = {}
        self.failing: set = set()

    async def store(self, url, html, screenshot=None):
        if url in self.failing:
            raise ArtifactStoreError(f"disk full while storing {url}")
        self.stored[url] = html
        return f"memory://{safe_file_name(url)}"


@pytest.fixture()
def store() -> FakePageStore:
    return FakePageStore()


@pytest.fixture()
def provider() -> FakeQueueProvider:
    return FakeQueueProvider()


@pytest.fixture()
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture()
def artifact_store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture()
def completions() -> List[str]:
    return []


@pytest.fixture()
def make_coordinator(store, renderer, artifact_store, completions):
    """
    Build a coordinator around the fake capabilities. Keyword arguments are
    passed to ``CrawlCoordinator``; ``batcher`` may be supplied separately.
    """
    def factory(batcher: Optional[PersistenceBatcher] = None, on_complete=None, **kwargs):
        async def record_completion(url):
            completions.append(url)

        options = {
            'max_concurrency': 3,
            'max_requests_per_minute': 10_000,
            'request_handler_timeout': 5.0,
        }
        options.update(kwargs)
        return CrawlCoordinator(
            renderer=renderer,
            artifact_store=artifact_store,
            batcher=batcher or PersistenceBatcher(store, chunk_size=100, max_queue_size=1000),
            dedup_gate=DedupGate(store),
            store=store,
            admission_filter=AdmissionFilter([ALLOWED_DOMAIN]),
            on_complete=on_complete or record_completion,
            **options,
        )

    return factory


@pytest.fixture()
def crawl_config():
    """Return a valid configuration that ignores the process environment."""
    def factory(**crawler):
        crawler_section = {'allowed_domains': [ALLOWED_DOMAIN], 'stats_interval': 60}
        crawler_section.update(crawler)
        return ConfigManager(environ={}).load_dict({'crawler': crawler_section})

    return factory
