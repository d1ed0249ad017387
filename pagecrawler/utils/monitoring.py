"""
Monitoring and metrics collection for the crawler.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class MetricsCollector:
    """Holds the Prometheus metrics of one crawler process."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()
        self.current_values: Dict[str, float] = {}

        self.prometheus_metrics = {
            'urls_admitted_total': Counter(
                'crawler_urls_admitted_total',
                'URLs passed to the coordinator',
                registry=self.registry
            ),
            'crawl_outcomes_total': Counter(
                'crawler_crawl_outcomes_total',
                'Terminal crawl outcomes',
                ['outcome'],
                registry=self.registry
            ),
            'completions_total': Counter(
                'crawler_completions_total',
                'Completion callbacks fired',
                registry=self.registry
            ),
            'acks_total': Counter(
                'crawler_acks_total',
                'Queue messages acknowledged',
                registry=self.registry
            ),
            'ack_misses_total': Counter(
                'crawler_ack_misses_total',
                'Acks without a tracked delivery token',
                registry=self.registry
            ),
            'urls_discovered_total': Counter(
                'crawler_urls_discovered_total',
                'New URLs inserted by discovery',
                registry=self.registry
            ),
            'rows_upserted_total': Counter(
                'crawler_rows_upserted_total',
                'Page rows written by the batcher',
                registry=self.registry
            ),
            'flush_failures_total': Counter(
                'crawler_flush_failures_total',
                'Failed batch flushes',
                registry=self.registry
            ),
            'batch_window_size': Gauge(
                'crawler_batch_window_size',
                'Page records waiting to be flushed',
                registry=self.registry
            ),
            'in_flight_crawls': Gauge(
                'crawler_in_flight_crawls',
                'Crawls currently rendering',
                registry=self.registry
            ),
            'render_time_seconds': Histogram(
                'crawler_render_time_seconds',
                'Time spent rendering a page',
                registry=self.registry
            ),
        }

    def start_prometheus_server(self):
        """Start the Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment_counter(self, name: str, amount: float = 1, labels: Optional[Dict[str, str]] = None):
        metric = self.prometheus_metrics[name]
        if labels:
            metric.labels(**labels).inc(amount)
            key = f"{name}{{{','.join(f'{k}={v}' for k, v in sorted(labels.items()))}}}"
        else:
            metric.inc(amount)
            key = name
        self.current_values[key] = self.current_values.get(key, 0) + amount

    def set_gauge(self, name: str, value: float):
        self.prometheus_metrics[name].set(value)
        self.current_values[name] = value

    def observe_histogram(self, name: str, value: float):
        self.prometheus_metrics[name].observe(value)

    def get_current_values(self) -> Dict[str, float]:
        return dict(self.current_values)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.start_time = time.time()

    def record_admitted(self):
        self.metrics.increment_counter('urls_admitted_total')

    def record_outcome(self, outcome: str):
        self.metrics.increment_counter('crawl_outcomes_total', labels={'outcome': outcome})

    def record_completion(self):
        self.metrics.increment_counter('completions_total')

    def record_ack(self, tracked: bool):
        self.metrics.increment_counter('acks_total' if tracked else 'ack_misses_total')

    def record_discovered(self):
        self.metrics.increment_counter('urls_discovered_total')

    def record_flush(self, rows: int):
        self.metrics.increment_counter('rows_upserted_total', rows)

    def record_flush_failure(self):
        self.metrics.increment_counter('flush_failures_total')

    def update_window_size(self, size: int):
        self.metrics.set_gauge('batch_window_size', size)

    def update_in_flight(self, count: int):
        self.metrics.set_gauge('in_flight_crawls', count)

    def record_render_time(self, seconds: float):
        self.metrics.observe_histogram('render_time_seconds', seconds)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time
        completions = current_values.get('completions_total', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'pages_per_minute': completions / (runtime / 60) if runtime > 0 else 0,
            }
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor and start its exporter when enabled."""
    collector = MetricsCollector(enable_prometheus, prometheus_port)
    collector.start_prometheus_server()
    return CrawlerMonitor(collector)
