# File: tests/test_config.py
from pathlib import Path

import pytest

from pagecrawler.utils.config import ConfigManager, load_config

BASE_CONFIG = """
crawler:
  allowed_domains:
    - shop.example
queue:
  redis:
    stream: "shop:urls"
"""


def write_config(tmp_path: Path, content: str = BASE_CONFIG) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults(tmp_path):
    config = load_config(write_config(tmp_path), environ={})

    assert config.crawler.max_concurrency == 3
    assert config.crawler.max_requests_per_minute == 50
    assert config.crawler.max_requests_per_crawl == 10
    assert config.crawler.request_handler_timeout == 30
    assert config.database.chunk_size == 100
    assert config.database.max_queue_size == 1000
    assert config.shutdown.graceful_timeout == 30
    assert config.shutdown.exit_timeout == 5
    assert config.queue.type == "redis"
    assert config.artifacts.type == "local"


def test_partial_provider_section_keeps_defaults(tmp_path):
    config = load_config(write_config(tmp_path), environ={})

    assert config.queue.redis["stream"] == "shop:urls"
    assert config.queue.redis["group"] == "crawlers"
    assert config.queue.redis["visibility_timeout"] == 300


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml", environ={})


def test_environment_overrides(tmp_path):
    environ = {
        "MAX_REQUESTS_PER_CRAWL": "500",
        "MAX_CONCURRENCY": "8",
        "MAX_REQUESTS_PER_MINUTE": "120",
        "DB_UPSERT_CHUNK_SIZE": "50",
        "DB_UPSERT_MAX_QUEUE_SIZE": "200",
        "PG_HOST": "db.internal",
        "PG_PORT": "6432",
        "LOG_LEVEL": "DEBUG",
    }

    config = load_config(write_config(tmp_path), environ=environ)

    assert config.crawler.max_requests_per_crawl == 500
    assert config.crawler.max_concurrency == 8
    assert config.crawler.max_requests_per_minute == 120
    assert config.database.chunk_size == 50
    assert config.database.max_queue_size == 200
    assert config.database.host == "db.internal"
    assert config.database.port == 6432
    assert config.logging.level == "DEBUG"


@pytest.mark.parametrize("value", ["abc", "-3", "0", "2.5", " "])
def test_invalid_numeric_overrides_are_ignored(tmp_path, value):
    config = load_config(write_config(tmp_path), environ={"MAX_CONCURRENCY": value})
    assert config.crawler.max_concurrency == 3


@pytest.mark.parametrize(
    "value,expected",
    [("LocalStorage", "local"), ("AWSStorage", "s3"), ("s3", "s3")],
)
def test_page_storage_selects_artifact_store(tmp_path, value, expected):
    config = load_config(write_config(tmp_path), environ={"PAGE_STORAGE": value})
    assert config.artifacts.type == expected


def test_unknown_page_storage_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        load_config(write_config(tmp_path), environ={"PAGE_STORAGE": "FloppyStorage"})


def test_sqs_queue_url_switches_queue(tmp_path):
    environ = {
        "SQS_QUEUE_URL": "https://sqs.eu-west-1.amazonaws.com/123/crawl",
        "AWS_REGION": "us-east-1",
        "AWS_S3_BUCKET": "shop-pages",
    }

    config = load_config(write_config(tmp_path), environ=environ)

    assert config.queue.type == "sqs"
    assert config.queue.sqs["queue_url"] == environ["SQS_QUEUE_URL"]
    assert config.queue.sqs["region"] == "us-east-1"
    assert config.artifacts.s3["bucket"] == "shop-pages"


def test_unbounded_budget(tmp_path):
    content = BASE_CONFIG.replace("crawler:\n", "crawler:\n  max_requests_per_crawl: null\n")
    config = load_config(write_config(tmp_path, content), environ={})
    assert config.crawler.max_requests_per_crawl is None


@pytest.mark.parametrize(
    "data",
    [
        {"crawler": {"allowed_domains": []}},
        {"crawler": {"allowed_domains": ["shop.example"], "max_concurrency": 0}},
        {"crawler": {"allowed_domains": ["shop.example"], "renderer": "curl"}},
        {"crawler": {"allowed_domains": ["shop.example"]}, "queue": {"type": "sqs"}},
        {"crawler": {"allowed_domains": ["shop.example"]}, "database": {"chunk_size": 2000}},
    ],
)
def test_validation_errors(data):
    with pytest.raises(ValueError):
        ConfigManager(environ={}).load_dict(data)
