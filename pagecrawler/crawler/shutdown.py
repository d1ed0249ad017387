"""
Graceful shutdown: flush buffered page records before the process exits.
"""

import asyncio
import logging
import signal
from typing import Optional

from ..storage.batcher import BatcherError, PersistenceBatcher
from ..storage.database import StoreError

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """
    Drains the persistence batcher within a bounded time.

    Deliberate shutdowns (signal, end of run) get ``graceful_timeout``; the
    exit hook gets the shorter ``exit_timeout``. A failed drain is logged and
    does not raise, but it turns the exit code into 1.
    """

    def __init__(self, batcher: PersistenceBatcher, graceful_timeout: float = 30.0,
                 exit_timeout: float = 5.0):
        self.batcher = batcher
        self.graceful_timeout = graceful_timeout
        self.exit_timeout = exit_timeout
        self.logger = logging.getLogger(__name__)

        self._shutdown_event = asyncio.Event()
        self.signal_name: Optional[str] = None
        self.drain_failed = False

    @property
    def requested(self) -> bool:
        return self._shutdown_event.is_set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Route SIGINT and SIGTERM to ``request_shutdown``."""
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.remove_signal_handler(sig)

    def request_shutdown(self, signal_name: str = 'shutdown request'):
        if self.requested:
            self.logger.info(f"Received {signal_name}, shutdown already in progress")
            return
        self.signal_name = signal_name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        self._shutdown_event.set()

    async def wait(self):
        await self._shutdown_event.wait()

    async def drain(self, reason: str, timeout: Optional[float] = None) -> bool:
        """Flush the batcher; returns False (and records failure) on error or timeout."""
        timeout = self.graceful_timeout if timeout is None else timeout
        self.logger.info(
            f"{reason}: flushing upsert queue ({self.batcher.pending} pending, {timeout}s budget)"
        )
        try:
            await self.batcher.drain(timeout)
        except (BatcherError, StoreError) as e:
            self.drain_failed = True
            self.logger.warning(f"Failed to flush upsert queue before exit: {e}. Exiting anyway.")
            return False
        return True

    async def on_shutdown(self) -> bool:
        """Drain after a signal."""
        return await self.drain(f"Received {self.signal_name}", self.graceful_timeout)

    async def on_exit(self) -> bool:
        """Best-effort drain right before the process exits."""
        try:
            if self.batcher.pending == 0:
                return True
            return await self.drain("Process exiting", self.exit_timeout)
        finally:
            self.logger.info(f"Total pages upserted to database: {self.batcher.total_upserted}")

    def exit_code(self, status: int = 0) -> int:
        return 1 if self.drain_failed else status
