"""
Crawl pipeline components.
"""

from .renderer import HttpRenderer, PlaywrightRenderer, Renderer, RenderError, RenderResult
from .admission import AdmissionFilter
from .coordinator import CrawlCoordinator, CrawlOutcome, RateLimiter
from .shutdown import ShutdownCoordinator
from .scheduler import CrawlerScheduler

__all__ = [
    'HttpRenderer', 'PlaywrightRenderer', 'Renderer', 'RenderError', 'RenderResult',
    'AdmissionFilter',
    'CrawlCoordinator', 'CrawlOutcome', 'RateLimiter',
    'ShutdownCoordinator',
    'CrawlerScheduler',
]
