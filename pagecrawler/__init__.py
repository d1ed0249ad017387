"""
Page Crawler

Queue-driven page crawler with write-behind persistence of crawled pages.
"""

__version__ = "1.0.0"
__description__ = "A queue-driven crawler that renders pages and records them in PostgreSQL"
