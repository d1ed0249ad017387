"""
Discovery deduplication in front of the page store.
"""

import logging
from typing import Dict, Optional, Set

from .database import UNCRAWLED_LOCATOR, PageStore
from ..utils.monitoring import CrawlerMonitor


class DedupGate:
    """
    Registers newly discovered URLs with the store at most once per process.

    The in-memory seen set only saves round-trips; the store's unique key on
    ``url`` is what actually prevents duplicate rows. The membership test and
    the add happen with no await in between, so concurrent tasks on the same
    event loop cannot both claim a URL.
    """

    def __init__(self, store: PageStore, monitor: Optional[CrawlerMonitor] = None):
        self.store = store
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)
        self._seen: Set[str] = set()
        self.stats = {
            'total_checks': 0,
            'cache_hits': 0,
            'inserted': 0,
            'already_known': 0,
            'errors': 0,
        }

    def __contains__(self, url: str) -> bool:
        return url in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    async def check_and_insert(self, url: str) -> bool:
        """
        Insert ``url`` with a placeholder locator unless it was seen before.

        Returns True when a new row was created. A store fault forgets the
        URL so a later discovery retries it, then re-raises.
        """
        self.stats['total_checks'] += 1

        if url in self._seen:
            self.stats['cache_hits'] += 1
            return False
        self._seen.add(url)

        try:
            inserted = await self.store.insert_if_absent(url, UNCRAWLED_LOCATOR)
        except Exception:
            self._seen.discard(url)
            self.stats['errors'] += 1
            raise

        if inserted:
            self.stats['inserted'] += 1
            self.logger.debug(f"Registered new URL: {url}")
            if self.monitor:
                self.monitor.record_discovered()
        else:
            self.stats['already_known'] += 1

        return inserted

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, 'seen': len(self._seen)}
