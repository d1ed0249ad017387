"""
Page renderers: turn a URL into page HTML, visible text and same-domain links.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .specializations import get_specialization
from ..utils.config import CrawlerConfig
from ..utils.urls import same_domain_links

# Pages with less visible text than this are not worth storing.
DEFAULT_MIN_CONTENT_LENGTH = 50


class RenderError(Exception):
    """Raised when a page cannot be loaded or rendered."""
    pass


class RenderTimeoutError(RenderError):
    """Raised when navigation or rendering exceeds its time limit."""
    pass


@dataclass
class RenderResult:
    """Result of rendering one page."""
    url: str
    html: str
    text: str
    links: List[str] = field(default_factory=list)
    screenshot: Optional[bytes] = None
    idle_timeout: bool = False
    render_time: float = 0.0

    def is_useless(self, min_length: int = DEFAULT_MIN_CONTENT_LENGTH) -> bool:
        """True when the page body carries too little text to keep."""
        return len(self.text.strip()) < min_length


class Renderer:
    """Abstract base class for renderers."""

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        pass

    async def render(self, url: str) -> RenderResult:
        """Render ``url``. Raises RenderError when the page cannot be loaded."""
        raise NotImplementedError

    async def close(self):
        pass


class HttpRenderer(Renderer):
    """
    Fetches pages over plain HTTP and reads them with BeautifulSoup.

    No JavaScript is executed, so this suits server-rendered sites and tests.
    """

    TEXT_TYPES = ('text/html', 'application/xhtml+xml')

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_concurrent_requests: int = 10, max_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_size = max_size
        self.session: Optional[ClientSession] = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
        }

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    ttl_dns_cache=300,
                ),
            )
            self.logger.info("HTTP renderer session started")

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("HTTP renderer session closed")

    async def render(self, url: str) -> RenderResult:
        if self.session is None:
            raise RenderError("HTTP renderer not started")

        start_time = time.monotonic()
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(url) as response:
                if response.status >= 400:
                    raise RenderError(f"HTTP {response.status} for {url}")

                content_type = response.headers.get('content-type', '').lower()
                if not any(text_type in content_type for text_type in self.TEXT_TYPES):
                    raise RenderError(f"Non-HTML content type {content_type!r} for {url}")

                html = await self._read_content(response)
                final_url = str(response.url)
        except asyncio.TimeoutError as e:
            self.stats['failed_requests'] += 1
            raise RenderTimeoutError(f"Timeout fetching {url}") from e
        except ClientError as e:
            self.stats['failed_requests'] += 1
            raise RenderError(f"Client error fetching {url}: {e}") from e
        except RenderError:
            self.stats['failed_requests'] += 1
            raise

        soup = BeautifulSoup(html, 'lxml')
        hrefs = [anchor.get('href') for anchor in soup.find_all('a', href=True)]
        for element in soup(['script', 'style', 'noscript']):
            element.decompose()
        body = soup.body or soup
        text = ' '.join(body.get_text(' ').split())

        self.stats['successful_requests'] += 1
        return RenderResult(
            url=final_url,
            html=html,
            text=text,
            links=same_domain_links(final_url, hrefs),
            render_time=time.monotonic() - start_time,
        )

    async def _read_content(self, response) -> str:
        """Read the body, refusing anything larger than ``max_size``."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            raise RenderError(f"Content too large ({content_length} bytes): {response.url}")

        content_bytes = b''
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > self.max_size:
                raise RenderError(f"Content exceeded size limit while reading: {response.url}")

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()


class PlaywrightRenderer(Renderer):
    """Renders pages in headless Chromium so client-side content is included."""

    def __init__(self, user_agent: str, navigation_timeout: int = 30,
                 network_idle_timeout: int = 10, capture_screenshots: bool = True):
        self.user_agent = user_agent
        self.navigation_timeout_ms = navigation_timeout * 1000
        self.network_idle_timeout_ms = network_idle_timeout * 1000
        self.capture_screenshots = capture_screenshots
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.logger = logging.getLogger(__name__)

    async def start(self):
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True)
            self.logger.info("Playwright renderer started")

    async def close(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            self.logger.info("Playwright renderer closed")

    async def render(self, url: str) -> RenderResult:
        if self._browser is None:
            raise RenderError("Playwright renderer not started")

        start_time = time.monotonic()
        try:
            context = await self._browser.new_context(user_agent=self.user_agent)
        except PlaywrightError as e:
            raise RenderError(f"Failed to open browser context for {url}: {e}") from e

        try:
            try:
                page = await context.new_page()
            except PlaywrightError as e:
                raise RenderError(f"Failed to open page for {url}: {e}") from e

            try:
                response = await page.goto(url, wait_until='load', timeout=self.navigation_timeout_ms)
            except PlaywrightTimeoutError as e:
                raise RenderTimeoutError(f"Navigation timeout for {url}") from e
            except PlaywrightError as e:
                raise RenderError(f"Navigation failed for {url}: {e}") from e

            if response is not None and response.status >= 400:
                raise RenderError(f"HTTP {response.status} for {url}")

            idle_timeout = False
            try:
                await page.wait_for_load_state('networkidle', timeout=self.network_idle_timeout_ms)
            except PlaywrightTimeoutError:
                self.logger.warning(f"Network idle timeout for {page.url}")
                idle_timeout = True
            except PlaywrightError as e:
                raise RenderError(f"Waiting for network idle failed for {url}: {e}") from e

            try:
                specialization = get_specialization(page.url)
                if specialization:
                    await specialization.apply(page)

                html = await page.content()
                text = await page.inner_text('body')
                hrefs = await page.eval_on_selector_all('a[href]', 'anchors => anchors.map(a => a.href)')
                screenshot = None
                if self.capture_screenshots:
                    screenshot = await page.screenshot(full_page=True, type='jpeg', quality=80)
            except PlaywrightError as e:
                raise RenderError(f"Rendering failed for {url}: {e}") from e

            return RenderResult(
                url=page.url,
                html=html,
                text=text,
                links=same_domain_links(page.url, hrefs),
                screenshot=screenshot,
                idle_timeout=idle_timeout,
                render_time=time.monotonic() - start_time,
            )
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                self.logger.warning(f"Failed to close browser context for {url}: {e}")


def _http(config: CrawlerConfig) -> Renderer:
    return HttpRenderer(
        user_agent=config.user_agent,
        request_timeout=config.navigation_timeout,
        max_concurrent_requests=config.max_concurrency,
    )


def _playwright(config: CrawlerConfig) -> Renderer:
    return PlaywrightRenderer(
        user_agent=config.user_agent,
        navigation_timeout=config.navigation_timeout,
        network_idle_timeout=config.network_idle_timeout,
        capture_screenshots=config.capture_screenshots,
    )


RENDERERS = {
    'http': _http,
    'playwright': _playwright,
}


def create_renderer(config: CrawlerConfig) -> Renderer:
    """Build the renderer selected in configuration."""
    try:
        factory = RENDERERS[config.renderer]
    except KeyError:
        raise RenderError(f"Unknown renderer: {config.renderer}") from None
    return factory(config)
