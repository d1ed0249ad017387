# File: tests/test_coordinator.py
import asyncio
import random
import time
from collections import Counter
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

from pagecrawler.crawler.coordinator import RateLimiter
from pagecrawler.crawler.renderer import PlaywrightRenderer
from pagecrawler.storage.batcher import PersistenceBatcher

from conftest import stub_browser

SHOP = "https://shop.example"


@pytest.mark.asyncio
async def test_every_admitted_url_completes_exactly_once(store, renderer, make_coordinator, completions):
    rng = random.Random(1234)
    urls = []
    for i in range(1000):
        kind = rng.choice(['ok', 'useless', 'error', 'rejected'])
        if kind == 'rejected':
            url = f"{SHOP}/p/{i}?ref=home"
        else:
            url = f"{SHOP}/p/{i}"
            renderer.outcomes[url] = kind
        urls.append(url)

    batcher = PersistenceBatcher(store, chunk_size=100, max_queue_size=50)
    coordinator = make_coordinator(batcher=batcher, max_concurrency=10)

    for url in urls:
        assert await coordinator.admit(url) is True

    assert await coordinator.join(timeout=10)
    await batcher.drain(5)

    counts = Counter(completions)
    assert len(completions) == 1000
    assert set(counts) == set(urls)
    assert max(counts.values()) == 1

    stats = coordinator.get_stats()
    assert stats['completed'] == 1000
    assert stats['succeeded'] + stats['rejected'] + stats['useless'] + stats['failed'] == 1000
    assert stats['in_flight'] == 0

    stored = {url for url, record in store.rows.items() if record.active}
    assert stored == {url for url in urls if renderer.outcomes.get(url) == 'ok'}


@pytest.mark.asyncio
async def test_rejected_url_is_marked_inactive_without_rendering(store, renderer, make_coordinator,
                                                                 completions):
    url = f"{SHOP}/cart"
    await store.insert_if_absent(url)
    coordinator = make_coordinator()

    assert await coordinator.admit(url) is True

    assert completions == [url]
    assert renderer.rendered == []
    assert store.inactive == [url]
    assert store.rows[url].active is False
    assert coordinator.get_stats()['rejected'] == 1


@pytest.mark.asyncio
async def test_useless_page_is_marked_inactive(store, renderer, make_coordinator, completions):
    url = f"{SHOP}/p/empty"
    renderer.outcomes[url] = 'useless'
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert store.inactive == [url]
    assert coordinator.batcher.pending == 0
    assert coordinator.get_stats()['useless'] == 1


@pytest.mark.asyncio
async def test_render_failure_is_completed_and_not_retried(store, renderer, make_coordinator, completions):
    url = f"{SHOP}/p/broken"
    renderer.outcomes[url] = 'error'
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert renderer.rendered == [url]
    assert store.inactive == [url]
    assert coordinator.get_stats()['failed'] == 1


@pytest.mark.asyncio
async def test_request_handler_timeout_counts_as_failure(store, renderer, make_coordinator, completions):
    url = f"{SHOP}/p/slow"
    renderer.outcomes[url] = 'hang'
    coordinator = make_coordinator(request_handler_timeout=0.05)

    await coordinator.admit(url)
    assert await coordinator.join(timeout=2)

    assert completions == [url]
    assert store.inactive == [url]
    assert coordinator.get_stats()['failed'] == 1


@pytest.mark.asyncio
async def test_artifact_store_failure_counts_as_failure(store, artifact_store, make_coordinator, completions):
    url = f"{SHOP}/p/1"
    artifact_store.failing.add(url)
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert store.inactive == [url]
    assert coordinator.batcher.pending == 0


@pytest.mark.asyncio
async def test_successful_crawl_enqueues_page_record(store, artifact_store, make_coordinator, completions):
    url = f"{SHOP}/p/1"
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert url in artifact_store.stored
    [record] = coordinator.batcher.pending_records()
    assert record.url == url
    assert record.domain == "shop.example"
    assert record.content_locator == "memory://https___shop_example_p_1"


@pytest.mark.asyncio
async def test_concurrency_ceiling_is_respected(renderer, make_coordinator, completions):
    renderer.delay = 0.05
    coordinator = make_coordinator(max_concurrency=3)

    for i in range(10):
        await coordinator.admit(f"{SHOP}/p/{i}")
    assert await coordinator.join(timeout=5)

    assert renderer.max_in_flight == 3
    assert len(completions) == 10


@pytest.mark.asyncio
async def test_rate_limiter_spreads_acquisitions_over_window():
    limiter = RateLimiter(3, window=0.2)

    start = time.monotonic()
    for _ in range(3):
        await limiter.acquire()
    assert time.monotonic() - start < 0.1

    for _ in range(3):
        await limiter.acquire()
    assert time.monotonic() - start >= 0.19


def test_rate_limiter_rejects_zero_events():
    with pytest.raises(ValueError):
        RateLimiter(0)


@pytest.mark.asyncio
async def test_stopped_coordinator_refuses_admission(renderer, make_coordinator, completions):
    coordinator = make_coordinator()
    coordinator.stop("admission budget exhausted")

    assert await coordinator.admit(f"{SHOP}/p/1") is False
    assert renderer.rendered == []
    assert completions == []
    assert coordinator.stop_reason == "admission budget exhausted"


@pytest.mark.asyncio
async def test_discovered_links_are_registered_once(store, renderer, make_coordinator):
    page = f"{SHOP}/p/1"
    renderer.links[page] = [
        f"{SHOP}/p/2",
        f"{SHOP}/p/3",
        f"{SHOP}/cart",
        f"{SHOP}/p/4?sort=price",
    ]
    renderer.links[f"{SHOP}/p/2"] = [f"{SHOP}/p/3"]
    coordinator = make_coordinator()

    await coordinator.admit(page)
    await coordinator.admit(f"{SHOP}/p/2")
    assert await coordinator.join(timeout=1)

    assert sorted(store.inserted) == [f"{SHOP}/p/2", f"{SHOP}/p/3"]
    assert f"{SHOP}/cart" not in store.rows


@pytest.mark.asyncio
async def test_discovery_fault_does_not_affect_completion(store, renderer, make_coordinator, completions):
    page = f"{SHOP}/p/1"
    renderer.links[page] = [f"{SHOP}/p/2"]
    store.fail_inserts = 1
    coordinator = make_coordinator()

    await coordinator.admit(page)
    assert await coordinator.join(timeout=1)

    assert completions == [page]
    assert f"{SHOP}/p/2" not in coordinator.dedup_gate


@pytest.mark.asyncio
async def test_flush_failure_keeps_record_and_still_completes(store, make_coordinator, completions):
    store.fail_upserts = 1
    batcher = PersistenceBatcher(store, chunk_size=1, max_queue_size=1)
    coordinator = make_coordinator(batcher=batcher)

    await coordinator.admit(f"{SHOP}/p/1")
    assert await coordinator.join(timeout=1)

    assert completions == [f"{SHOP}/p/1"]
    assert batcher.pending == 1
    assert coordinator.get_stats()['succeeded'] == 1


@pytest.mark.asyncio
async def test_failing_completion_callback_does_not_block_others(make_coordinator):
    acked = []

    async def flaky_ack(url):
        if url.endswith("/1"):
            raise RuntimeError("ack failed")
        acked.append(url)

    coordinator = make_coordinator(on_complete=flaky_ack)
    for i in range(1, 4):
        await coordinator.admit(f"{SHOP}/p/{i}")
    assert await coordinator.join(timeout=1)

    assert sorted(acked) == [f"{SHOP}/p/2", f"{SHOP}/p/3"]
    assert coordinator.get_stats()['completed'] == 3


@pytest.mark.asyncio
async def test_abandoned_crawls_are_not_completed(renderer, make_coordinator, completions):
    renderer.default = 'hang'
    coordinator = make_coordinator(request_handler_timeout=60)

    await coordinator.admit(f"{SHOP}/p/1")
    await coordinator.admit(f"{SHOP}/p/2")
    assert await coordinator.join(timeout=0.05) is False

    await coordinator.cancel_all()
    await asyncio.sleep(0)

    assert completions == []
    assert coordinator.in_flight == 0


@pytest.mark.asyncio
async def test_unexpected_renderer_error_marks_page_inactive(store, renderer, make_coordinator, completions):
    url = f"{SHOP}/p/1"
    renderer.outcomes[url] = 'crash'
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert store.inactive == [url]
    assert coordinator.get_stats()['failed'] == 1


@pytest.mark.asyncio
async def test_closed_browser_marks_page_inactive(store, make_coordinator, completions):
    url = f"{SHOP}/p/1"
    await store.insert_if_absent(url)
    browser = stub_browser()
    browser.new_context.side_effect = PlaywrightError("Target page, context or browser has been closed")
    coordinator = make_coordinator()
    coordinator.renderer = PlaywrightRenderer(user_agent="TestAgent/1.0")
    coordinator.renderer._browser = browser

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert store.inactive == [url]
    assert store.rows[url].active is False
    assert coordinator.get_stats()['failed'] == 1


@pytest.mark.asyncio
async def test_store_fault_while_rejecting_still_completes(store, make_coordinator, completions):
    url = f"{SHOP}/cart"
    store.mark_inactive = AsyncMock(side_effect=RuntimeError("pool is closed"))
    coordinator = make_coordinator()

    assert await coordinator.admit(url) is True

    assert completions == [url]
    assert coordinator.get_stats()['rejected'] == 1
    store.mark_inactive.assert_awaited_once_with(url)


@pytest.mark.asyncio
async def test_store_fault_after_failed_render_still_completes(store, renderer, make_coordinator, completions):
    url = f"{SHOP}/p/broken"
    renderer.outcomes[url] = 'error'
    store.mark_inactive = AsyncMock(side_effect=RuntimeError("pool is closed"))
    coordinator = make_coordinator()

    await coordinator.admit(url)
    assert await coordinator.join(timeout=1)

    assert completions == [url]
    assert coordinator.get_stats()['failed'] == 1


@pytest.mark.asyncio
async def test_crawl_cancelled_before_starting_frees_its_slot(renderer, make_coordinator, completions):
    first, second = f"{SHOP}/p/1", f"{SHOP}/p/2"
    renderer.outcomes[first] = 'hang'
    coordinator = make_coordinator(max_concurrency=1, request_handler_timeout=60)

    await coordinator.admit(first)
    await coordinator.cancel_all()

    assert renderer.rendered == []
    assert coordinator.in_flight == 0

    assert await asyncio.wait_for(coordinator.admit(second), timeout=1)
    assert await coordinator.join(timeout=1)

    assert completions == [second]
    assert renderer.rendered == [second]
