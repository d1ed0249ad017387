#!/usr/bin/env python3
"""
Main entry point for the page crawler.
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pagecrawler import __version__
from pagecrawler.crawler.renderer import create_renderer
from pagecrawler.crawler.scheduler import CrawlerScheduler
from pagecrawler.crawler.shutdown import ShutdownCoordinator
from pagecrawler.storage.database import PostgresPageStore
from pagecrawler.utils.config import Config, load_config
from pagecrawler.utils.logger import log_system_info, setup_logging
from pagecrawler.utils.monitoring import initialize_monitoring
from pagecrawler.workqueue.consumer import create_queue_provider


class CrawlerApp:
    """Main application class for the page crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.shutdown: Optional[ShutdownCoordinator] = None
        self.logger = logging.getLogger(__name__)

    def apply_overrides(self, config: Config, max_pages: Optional[int] = None,
                        max_duration: Optional[int] = None, json_logs: bool = False):
        """Command line flags win over file and environment values."""
        if max_pages is not None:
            config.crawler.max_requests_per_crawl = max_pages
        if max_duration is not None:
            config.crawler.run_timeout = max_duration
        if json_logs:
            config.logging.json = True

    async def run(self, config_path: str, max_pages: Optional[int] = None,
                  max_duration: Optional[int] = None, seeds: Optional[List[str]] = None,
                  dry_run: bool = False, json_logs: bool = False) -> int:
        """Run the crawler and return the process exit code."""
        status = 0
        try:
            config = load_config(config_path)
            self.apply_overrides(config, max_pages, max_duration, json_logs)
            setup_logging(config.logging)
            log_system_info()

            self.logger.info("=== PAGE CRAWLER STARTING ===")
            self.logger.info(f"Configuration loaded from: {config_path}")
            self.logger.info(f"Allowed domains: {config.crawler.allowed_domains}")
            self.logger.info(f"Max concurrency: {config.crawler.max_concurrency}")
            self.logger.info(f"Max requests per minute: {config.crawler.max_requests_per_minute}")
            self.logger.info(f"Max requests per crawl: {config.crawler.max_requests_per_crawl}")
            self.logger.info(f"Queue type: {config.queue.type}")
            self.logger.info(f"Page storage: {config.artifacts.type}")

            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                await self._dry_run(config)
                return 0

            monitor = initialize_monitoring(config.monitoring.metrics_enabled,
                                            config.monitoring.prometheus_port)

            self.scheduler = CrawlerScheduler(config, monitor=monitor)
            await self.scheduler.initialize()

            self.shutdown = ShutdownCoordinator(
                self.scheduler.batcher,
                graceful_timeout=config.shutdown.graceful_timeout,
                exit_timeout=config.shutdown.exit_timeout,
            )
            self.shutdown.install_signal_handlers()

            if seeds:
                await self.scheduler.seed(seeds)

            crawl_task = asyncio.create_task(
                self.scheduler.start_crawling(config.crawler.run_timeout)
            )
            shutdown_task = asyncio.create_task(self.shutdown.wait())

            # Wait for either crawling to complete or a shutdown signal
            done, _ = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                self.logger.info("Shutdown requested, stopping crawler...")
                self.scheduler.stop_crawling(f"received {self.shutdown.signal_name}")
                await crawl_task
                await self.shutdown.on_shutdown()
            else:
                shutdown_task.cancel()
                await asyncio.gather(shutdown_task, return_exceptions=True)
                reason = crawl_task.result()
                await self.shutdown.drain(f"Crawl finished ({reason})")

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            status = 1

        finally:
            if self.shutdown:
                await self.shutdown.on_exit()
                self.shutdown.remove_signal_handlers()
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== PAGE CRAWLER FINISHED ===")

        return self.shutdown.exit_code(status) if self.shutdown else status

    async def _dry_run(self, config: Config):
        """Test configuration and connections without crawling."""
        self.logger.info(f"Testing {config.queue.type} queue connection...")
        try:
            provider = create_queue_provider(config.queue)
            await provider.initialize()
            await provider.close()
            self.logger.info("✓ Queue connection successful")
        except Exception as e:
            self.logger.error(f"✗ Queue connection failed: {e}")

        self.logger.info("Testing database configuration...")
        try:
            store = PostgresPageStore(config.database)
            await store.initialize()
            await store.close()
            self.logger.info("✓ Database initialization successful")
        except Exception as e:
            self.logger.error(f"✗ Database initialization failed: {e}")

        self.logger.info(f"Testing {config.crawler.renderer} renderer...")
        try:
            async with create_renderer(config.crawler) as renderer:
                if config.crawler.seed_urls:
                    test_url = config.crawler.seed_urls[0]
                    result = await renderer.render(test_url)
                    self.logger.info(
                        f"✓ Test render successful: {len(result.text)} characters, "
                        f"{len(result.links)} links"
                    )
                else:
                    self.logger.info("✓ Renderer started (no seed_urls configured for a test render)")
        except Exception as e:
            self.logger.error(f"✗ Renderer test failed: {e}")

        self.logger.info("Dry run completed")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Queue-driven page crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                   # Run with default config.yaml
  python main.py --config my_config.yaml          # Run with custom config
  python main.py --max-pages 1000                 # Admit at most 1000 queue items
  python main.py --max-duration 3600              # Run for 1 hour max
  python main.py --seed https://example.com/      # Queue a start URL first
  python main.py --dry-run                        # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--max-pages',
        type=int,
        help='Maximum number of queue items to admit this run'
    )

    parser.add_argument(
        '--max-duration',
        type=int,
        help='Maximum crawl duration in seconds'
    )

    parser.add_argument(
        '--seed',
        action='append',
        default=[],
        metavar='URL',
        help='Register and enqueue a start URL before crawling (repeatable)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually crawling'
    )

    parser.add_argument(
        '--json-logs',
        action='store_true',
        help='Write structured JSON logs'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Page Crawler {__version__}'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config_path=args.config,
            max_pages=args.max_pages,
            max_duration=args.max_duration,
            seeds=args.seed,
            dry_run=args.dry_run,
            json_logs=args.json_logs,
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
