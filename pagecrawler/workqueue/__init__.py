"""
Work queue consumption.
"""

from .consumer import (
    QueueError, QueueProvider, RedisStreamProvider, SQSProvider,
    WorkItem, WorkQueueConsumer, create_queue_provider,
)

__all__ = [
    'QueueError', 'QueueProvider', 'RedisStreamProvider', 'SQSProvider',
    'WorkItem', 'WorkQueueConsumer', 'create_queue_provider',
]
