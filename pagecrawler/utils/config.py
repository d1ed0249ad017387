"""
Configuration management for the crawler.

Values come from a YAML file and can be overridden per deployment through
environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

RENDERER_TYPES = ('http', 'playwright')
QUEUE_TYPES = ('redis', 'sqs')
ARTIFACT_TYPES = ('local', 's3')

# Names accepted in PAGE_STORAGE for deployments configured by class name.
_PAGE_STORAGE_ALIASES = {
    'localstorage': 'local',
    'local': 'local',
    'awsstorage': 's3',
    's3': 's3',
}


@dataclass
class CrawlerConfig:
    """Configuration for admission and rendering."""
    allowed_domains: List[str] = field(default_factory=list)
    seed_urls: List[str] = field(default_factory=list)
    max_concurrency: int = 3
    max_requests_per_minute: int = 50
    max_requests_per_crawl: Optional[int] = 10
    run_timeout: Optional[int] = None
    request_handler_timeout: int = 30
    navigation_timeout: int = 30
    network_idle_timeout: int = 10
    min_content_length: int = 50
    renderer: str = 'playwright'
    user_agent: str = 'pagecrawler/1.0'
    capture_screenshots: bool = True
    stats_interval: int = 30


@dataclass
class QueueConfig:
    """Configuration for the work queue."""
    type: str = 'redis'
    wait_seconds: int = 20
    redis: Dict[str, Any] = field(default_factory=lambda: {
        'url': 'redis://localhost:6379/0',
        'stream': 'crawler:urls',
        'group': 'crawlers',
        'consumer': None,
        'visibility_timeout': 300,
    })
    sqs: Dict[str, Any] = field(default_factory=lambda: {
        'queue_url': None,
        'region': 'eu-west-1',
    })


@dataclass
class DatabaseConfig:
    """Configuration for the relational page store."""
    host: str = 'localhost'
    port: int = 5432
    user: str = 'crawler'
    password: Optional[str] = None
    database: str = 'crawler'
    table: str = 'pages'
    pool_min_size: int = 1
    pool_max_size: int = 10
    chunk_size: int = 100
    max_queue_size: int = 1000


@dataclass
class ArtifactsConfig:
    """Configuration for rendered page artifacts."""
    type: str = 'local'
    local: Dict[str, Any] = field(default_factory=lambda: {'directory': 'pages'})
    s3: Dict[str, Any] = field(default_factory=lambda: {
        'bucket': 'crawler-pages',
        'region': 'eu-west-1',
        'prefix': '',
    })


@dataclass
class ShutdownConfig:
    """Drain budgets used when the process stops."""
    graceful_timeout: float = 30.0
    exit_timeout: float = 5.0
    join_timeout: float = 30.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawler.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig
    queue: QueueConfig
    database: DatabaseConfig
    artifacts: ArtifactsConfig
    shutdown: ShutdownConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig


def _positive_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == '':
        return None
    try:
        parsed = int(value, 10)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


class ConfigManager:
    """Manages configuration loading, environment overrides and validation."""

    def __init__(self, config_path: str = "config.yaml",
                 environ: Optional[Mapping[str, str]] = None):
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from the YAML file and the environment."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        return self.load_dict(config_data)

    def load_dict(self, config_data: Dict[str, Any]) -> Config:
        """Build configuration from an already-parsed mapping."""
        queue_data = dict(config_data.get('queue') or {})
        artifacts_data = dict(config_data.get('artifacts') or {})

        queue_config = QueueConfig(**queue_data)
        artifacts_config = ArtifactsConfig(**artifacts_data)
        # Partial provider sections are merged over the defaults
        queue_config.redis = {**QueueConfig().redis, **queue_config.redis}
        queue_config.sqs = {**QueueConfig().sqs, **queue_config.sqs}
        artifacts_config.local = {**ArtifactsConfig().local, **artifacts_config.local}
        artifacts_config.s3 = {**ArtifactsConfig().s3, **artifacts_config.s3}

        self._config = Config(
            crawler=CrawlerConfig(**(config_data.get('crawler') or {})),
            queue=queue_config,
            database=DatabaseConfig(**(config_data.get('database') or {})),
            artifacts=artifacts_config,
            shutdown=ShutdownConfig(**(config_data.get('shutdown') or {})),
            logging=LoggingConfig(**(config_data.get('logging') or {})),
            monitoring=MonitoringConfig(**(config_data.get('monitoring') or {})),
        )

        self._apply_environment()
        self._validate_config()
        return self._config

    def _apply_environment(self):
        """Override file values with deployment environment variables."""
        env = self.environ
        crawler = self._config.crawler
        database = self._config.database

        int_overrides = [
            ('MAX_REQUESTS_PER_CRAWL', crawler, 'max_requests_per_crawl'),
            ('MAX_CONCURRENCY', crawler, 'max_concurrency'),
            ('MAX_REQUESTS_PER_MINUTE', crawler, 'max_requests_per_minute'),
            ('REQUEST_HANDLER_TIMEOUT_S', crawler, 'request_handler_timeout'),
            ('NAVIGATION_TIMEOUT_S', crawler, 'navigation_timeout'),
            ('RUN_TIMEOUT_S', crawler, 'run_timeout'),
            ('PG_PORT', database, 'port'),
            ('DB_UPSERT_CHUNK_SIZE', database, 'chunk_size'),
            ('DB_UPSERT_MAX_QUEUE_SIZE', database, 'max_queue_size'),
        ]
        for name, section, attribute in int_overrides:
            value = _positive_int(env.get(name))
            if value is not None:
                setattr(section, attribute, value)
            elif env.get(name):
                logger.warning(f"Ignoring invalid value for {name}: {env.get(name)!r}")

        str_overrides = [
            ('PG_HOST', database, 'host'),
            ('PG_USER', database, 'user'),
            ('PG_PASSWORD', database, 'password'),
            ('PG_DATABASE', database, 'database'),
            ('RENDERER', crawler, 'renderer'),
            ('LOG_LEVEL', self._config.logging, 'level'),
        ]
        for name, section, attribute in str_overrides:
            value = env.get(name)
            if value and value.strip():
                setattr(section, attribute, value.strip())

        page_storage = env.get('PAGE_STORAGE')
        if page_storage and page_storage.strip():
            key = page_storage.strip().lower()
            if key not in _PAGE_STORAGE_ALIASES:
                raise ValueError(f"Unknown PAGE_STORAGE type: {page_storage}")
            self._config.artifacts.type = _PAGE_STORAGE_ALIASES[key]

        if env.get('AWS_S3_BUCKET'):
            self._config.artifacts.s3['bucket'] = env['AWS_S3_BUCKET']
        if env.get('AWS_REGION'):
            self._config.artifacts.s3['region'] = env['AWS_REGION']
            self._config.queue.sqs['region'] = env['AWS_REGION']

        if env.get('SQS_QUEUE_URL'):
            self._config.queue.sqs['queue_url'] = env['SQS_QUEUE_URL']
            self._config.queue.type = 'sqs'
        if env.get('REDIS_URL'):
            self._config.queue.redis['url'] = env['REDIS_URL']

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")

        crawler = self._config.crawler
        database = self._config.database

        if not crawler.allowed_domains:
            raise ValueError("At least one allowed domain must be provided")

        if crawler.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        if crawler.max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be at least 1")

        if crawler.max_requests_per_crawl is not None and crawler.max_requests_per_crawl < 1:
            raise ValueError("max_requests_per_crawl must be at least 1 or null")

        if crawler.renderer not in RENDERER_TYPES:
            raise ValueError(f"Renderer must be one of {RENDERER_TYPES}")

        if self._config.queue.type not in QUEUE_TYPES:
            raise ValueError(f"Queue type must be one of {QUEUE_TYPES}")

        if self._config.queue.type == 'sqs' and not self._config.queue.sqs.get('queue_url'):
            raise ValueError("SQS queue requires queue_url (or SQS_QUEUE_URL)")

        if self._config.artifacts.type not in ARTIFACT_TYPES:
            raise ValueError(f"Artifact storage type must be one of {ARTIFACT_TYPES}")

        if database.chunk_size < 1 or database.max_queue_size < 1:
            raise ValueError("chunk_size and max_queue_size must be at least 1")

        if database.chunk_size > database.max_queue_size:
            raise ValueError("chunk_size must not exceed max_queue_size")

        logger.info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: str = "config.yaml",
                environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from file and environment."""
    return ConfigManager(config_path, environ).load_config()
