"""
Page persistence: relational store, write-behind batching, discovery
deduplication and artifact storage.
"""

from .database import PageRecord, PageStore, PostgresPageStore, StoreError, UNCRAWLED_LOCATOR
from .batcher import BatcherError, DrainTimeoutError, PersistenceBatcher
from .dedup import DedupGate
from .artifacts import (
    ArtifactStore, ArtifactStoreError, LocalArtifactStore, S3ArtifactStore, create_artifact_store,
)

__all__ = [
    'PageRecord', 'PageStore', 'PostgresPageStore', 'StoreError', 'UNCRAWLED_LOCATOR',
    'BatcherError', 'DrainTimeoutError', 'PersistenceBatcher',
    'DedupGate',
    'ArtifactStore', 'ArtifactStoreError', 'LocalArtifactStore', 'S3ArtifactStore',
    'create_artifact_store',
]
