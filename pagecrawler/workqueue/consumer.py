"""
Work queue consumer for at-least-once URL delivery.

A queue message carries one URL. The consumer remembers the delivery token
of the newest delivery of every URL it pulled and deletes the message only
when the crawl of that URL has completed.
"""

import asyncio
import logging
import math
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
import redis.asyncio as redis
from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError, ResponseError

from ..utils.config import QueueConfig
from ..utils.monitoring import CrawlerMonitor

# Receive and delete batches are capped at 10 messages by SQS.
DEFAULT_MAX_BATCH = 10
DEFAULT_WAIT_SECONDS = 20


class QueueError(Exception):
    """Raised when the queue transport fails."""
    pass


@dataclass(frozen=True)
class WorkItem:
    """One delivery of a URL. Tokens differ between redeliveries."""
    url: str
    delivery_token: str


class QueueProvider:
    """Abstract base class for queue transports."""

    max_batch: int = DEFAULT_MAX_BATCH

    async def initialize(self):
        pass

    async def receive(self, max_messages: int, wait_seconds: int) -> List[WorkItem]:
        """Block up to ``wait_seconds`` for at most ``max_messages`` deliveries."""
        raise NotImplementedError

    async def delete(self, delivery_token: str):
        """Acknowledge one delivery so it is not redelivered."""
        raise NotImplementedError

    async def publish(self, url: str):
        """Put a URL on the queue."""
        raise NotImplementedError

    async def close(self):
        pass


class RedisStreamProvider(QueueProvider):
    """
    Queue on a Redis stream read through a consumer group.

    Entries read but not acknowledged within ``visibility_timeout`` seconds
    are claimed again, which gives at-least-once delivery. The delivery token
    is the stream entry id.
    """

    def __init__(self, client: redis.Redis, stream: str = 'crawler:urls', group: str = 'crawlers',
                 consumer: Optional[str] = None, visibility_timeout: int = 300):
        self.client = client
        self.stream = stream
        self.group = group
        self.consumer = consumer or f"{socket.gethostname()}-{id(self):x}"
        self.visibility_timeout_ms = visibility_timeout * 1000
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        try:
            await self.client.xgroup_create(self.stream, self.group, id='0', mkstream=True)
            self.logger.info(f"Created consumer group {self.group} on {self.stream}")
        except ResponseError as e:
            if 'BUSYGROUP' not in str(e):
                raise QueueError(f"Failed to create consumer group {self.group}: {e}") from e
        except RedisError as e:
            raise QueueError(f"Failed to initialize stream {self.stream}: {e}") from e

    async def receive(self, max_messages: int, wait_seconds: int) -> List[WorkItem]:
        try:
            # Deliveries that were never acknowledged come first
            claimed = await self.client.xautoclaim(
                self.stream, self.group, self.consumer,
                min_idle_time=self.visibility_timeout_ms,
                start_id='0-0',
                count=max_messages,
            )
            entries = list(claimed[1]) if claimed else []

            if not entries:
                response = await self.client.xreadgroup(
                    self.group, self.consumer,
                    streams={self.stream: '>'},
                    count=max_messages,
                    block=wait_seconds * 1000,
                )
                for _stream, stream_entries in response or []:
                    entries.extend(stream_entries)
        except RedisError as e:
            raise QueueError(f"Failed to read from stream {self.stream}: {e}") from e

        items = []
        for entry_id, fields in entries:
            url = (fields or {}).get('url')
            if not url:
                self.logger.warning(f"Skipping stream entry {entry_id} without url")
                continue
            items.append(WorkItem(url=url, delivery_token=entry_id))
        return items

    async def delete(self, delivery_token: str):
        try:
            await self.client.xack(self.stream, self.group, delivery_token)
            await self.client.xdel(self.stream, delivery_token)
        except RedisError as e:
            raise QueueError(f"Failed to acknowledge {delivery_token}: {e}") from e

    async def publish(self, url: str):
        try:
            await self.client.xadd(self.stream, {'url': url})
        except RedisError as e:
            raise QueueError(f"Failed to publish {url}: {e}") from e

    async def close(self):
        await self.client.aclose()


class SQSProvider(QueueProvider):
    """Queue on Amazon SQS. The delivery token is the receipt handle."""

    def __init__(self, queue_url: str, region: str = 'eu-west-1', client=None):
        if not queue_url:
            raise QueueError("SQS queue URL is not set")
        self.queue_url = queue_url
        self.client = client or boto3.client('sqs', region_name=region)
        self.logger = logging.getLogger(__name__)

    async def receive(self, max_messages: int, wait_seconds: int) -> List[WorkItem]:
        try:
            response = await asyncio.to_thread(
                self.client.receive_message,
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=min(self.max_batch, max(1, max_messages)),
                WaitTimeSeconds=wait_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"Failed to receive from {self.queue_url}: {e}") from e

        items = []
        for message in response.get('Messages', []):
            body = message.get('Body')
            receipt_handle = message.get('ReceiptHandle')
            if body and receipt_handle:
                items.append(WorkItem(url=body, delivery_token=receipt_handle))
        return items

    async def delete(self, delivery_token: str):
        try:
            await asyncio.to_thread(
                self.client.delete_message,
                QueueUrl=self.queue_url,
                ReceiptHandle=delivery_token,
            )
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"Failed to delete message: {e}") from e

    async def publish(self, url: str):
        try:
            await asyncio.to_thread(self.client.send_message, QueueUrl=self.queue_url, MessageBody=url)
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"Failed to publish {url}: {e}") from e


def _redis(config: Dict[str, Any]) -> QueueProvider:
    client = redis.Redis.from_url(config['url'], decode_responses=True)
    return RedisStreamProvider(
        client,
        stream=config.get('stream', 'crawler:urls'),
        group=config.get('group', 'crawlers'),
        consumer=config.get('consumer'),
        visibility_timeout=config.get('visibility_timeout', 300),
    )


def _sqs(config: Dict[str, Any]) -> QueueProvider:
    return SQSProvider(config.get('queue_url'), region=config.get('region', 'eu-west-1'))


QUEUE_PROVIDERS = {
    'redis': _redis,
    'sqs': _sqs,
}


def create_queue_provider(config: QueueConfig) -> QueueProvider:
    """Build the queue transport selected in configuration."""
    try:
        factory = QUEUE_PROVIDERS[config.type]
    except KeyError:
        raise QueueError(f"Unknown queue type: {config.type}") from None
    return factory(getattr(config, config.type))


class WorkQueueConsumer:
    """
    Pulls URLs from a queue provider and acknowledges them on completion.

    Only the newest delivery token of a URL is kept, so an ack always
    targets the most recent delivery. The consumer does not deduplicate
    URLs that are delivered again while still being crawled.
    """

    def __init__(self, provider: QueueProvider, budget: Optional[int] = None,
                 wait_seconds: int = DEFAULT_WAIT_SECONDS, monitor: Optional[CrawlerMonitor] = None):
        self.provider = provider
        self.budget = budget
        self.wait_seconds = wait_seconds
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self._delivery_tokens: Dict[str, str] = {}
        self._pulled = 0
        self.stats = {
            'pulled': 0,
            'acked': 0,
            'ack_misses': 0,
        }

    @property
    def remaining_budget(self) -> Optional[int]:
        """Items still allowed this run, or None when unbounded."""
        if self.budget is None:
            return None
        return max(0, self.budget - self._pulled)

    @property
    def exhausted(self) -> bool:
        return self.remaining_budget == 0

    def batch_size(self) -> int:
        """Number of messages to request on the next pull."""
        remaining = self.remaining_budget
        if remaining is None:
            return self.provider.max_batch
        if remaining <= 0:
            return 0
        return min(self.provider.max_batch, max(1, math.ceil(remaining / 10)))

    def tracked_token(self, url: str) -> Optional[str]:
        return self._delivery_tokens.get(url)

    async def pull(self) -> List[WorkItem]:
        """Receive the next batch of work; may be empty."""
        count = self.batch_size()
        if count == 0:
            self.logger.debug("Admission budget spent, not pulling")
            return []

        self.logger.debug(f"Requesting {count} messages from queue")
        items = await self.provider.receive(count, self.wait_seconds)

        for item in items:
            self._delivery_tokens[item.url] = item.delivery_token

        self._pulled += len(items)
        self.stats['pulled'] += len(items)
        if items:
            self.logger.debug(f"Received {len(items)} messages from queue")
        return items

    async def ack(self, url: str):
        """Delete the newest delivery of ``url``; a no-op if none is tracked."""
        token = self._delivery_tokens.pop(url, None)
        if token is None:
            self.logger.warning(f"Delivery token for {url} not found, skipping ack")
            self.stats['ack_misses'] += 1
            if self.monitor:
                self.monitor.record_ack(tracked=False)
            return

        try:
            await self.provider.delete(token)
        except QueueError:
            # Keep the token unless a newer delivery replaced it meanwhile
            self._delivery_tokens.setdefault(url, token)
            raise

        self.stats['acked'] += 1
        if self.monitor:
            self.monitor.record_ack(tracked=True)
        self.logger.debug(f"Acknowledged {url}")

    async def close(self):
        await self.provider.close()

    def get_stats(self) -> Dict[str, int]:
        return {**self.stats, 'tracked': len(self._delivery_tokens)}
