"""
Storage for rendered page artifacts (HTML and screenshots).

Each store returns a content locator that is recorded with the page row.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..utils.config import ArtifactsConfig
from ..utils.urls import safe_file_name


class ArtifactStoreError(Exception):
    """Raised when an artifact cannot be written."""
    pass


class ArtifactStore:
    """Abstract base class for artifact stores."""

    async def initialize(self):
        pass

    async def store(self, url: str, html: str, screenshot: Optional[bytes] = None) -> str:
        """Persist the rendered page and return its content locator."""
        raise NotImplementedError

    async def close(self):
        pass


class LocalArtifactStore(ArtifactStore):
    """Writes HTML and screenshots under a local directory."""

    def __init__(self, directory: str = 'pages'):
        self.directory = Path(directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {'pages_stored': 0, 'screenshots_stored': 0, 'storage_errors': 0}

    async def initialize(self):
        try:
            (self.directory / 'html').mkdir(parents=True, exist_ok=True)
            (self.directory / 'images').mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactStoreError(f"Failed to initialize local storage: {e}") from e
        self.logger.info(f"Local artifact storage initialized at {self.directory}")

    async def store(self, url: str, html: str, screenshot: Optional[bytes] = None) -> str:
        name = safe_file_name(url)
        html_path = self.directory / 'html' / f"{name}.html"

        try:
            html_path.parent.mkdir(parents=True, exist_ok=True)
            html_path.write_text(html, encoding='utf-8')

            if screenshot is not None:
                image_path = self.directory / 'images' / f"{name}.jpg"
                image_path.parent.mkdir(parents=True, exist_ok=True)
                image_path.write_bytes(screenshot)
                self.stats['screenshots_stored'] += 1
        except OSError as e:
            self.stats['storage_errors'] += 1
            raise ArtifactStoreError(f"Error storing page {url} to {html_path}: {e}") from e

        self.stats['pages_stored'] += 1
        self.logger.debug(f"Stored page {url} to {html_path}")
        return str(html_path)


class S3ArtifactStore(ArtifactStore):
    """Uploads HTML to an S3 bucket."""

    def __init__(self, bucket: str, region: str = 'eu-west-1', prefix: str = '', client=None):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip('/')
        self.client = client or boto3.client('s3', region_name=region)
        self.logger = logging.getLogger(__name__)
        self.stats = {'pages_stored': 0, 'storage_errors': 0}

    def _key(self, url: str) -> str:
        key = f"{safe_file_name(url)}.html"
        return f"{self.prefix}/{key}" if self.prefix else key

    async def store(self, url: str, html: str, screenshot: Optional[bytes] = None) -> str:
        key = self._key(url)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=html.encode('utf-8'),
                ContentType='text/html; charset=utf-8',
            )
        except (BotoCoreError, ClientError) as e:
            self.stats['storage_errors'] += 1
            raise ArtifactStoreError(
                f"Failed to store page {url} to S3 bucket {self.bucket} with key {key}: {e}"
            ) from e

        file_url = f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        self.stats['pages_stored'] += 1
        self.logger.info(f"Stored page {url} to S3: {file_url}")
        return file_url


def _local(config: Dict[str, Any]) -> ArtifactStore:
    return LocalArtifactStore(config.get('directory', 'pages'))


def _s3(config: Dict[str, Any]) -> ArtifactStore:
    return S3ArtifactStore(
        bucket=config['bucket'],
        region=config.get('region', 'eu-west-1'),
        prefix=config.get('prefix') or '',
    )


ARTIFACT_STORES = {
    'local': _local,
    's3': _s3,
}


def create_artifact_store(config: ArtifactsConfig) -> ArtifactStore:
    """Build the artifact store selected in configuration."""
    try:
        factory = ARTIFACT_STORES[config.type]
    except KeyError:
        raise ArtifactStoreError(f"Unknown artifact storage type: {config.type}") from None
    return factory(getattr(config, config.type))
