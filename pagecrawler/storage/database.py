"""
Relational page store.

The store holds one row per URL. Rows are written by multi-row upserts from
the persistence batcher and by insert-if-absent from discovery; pages are
never deleted, only marked inactive.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import asyncpg

from ..utils.config import DatabaseConfig
from ..utils.urls import get_domain

# Locator stored for URLs that are known but have not been crawled yet.
UNCRAWLED_LOCATOR = 'uncrawled'

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class StoreError(Exception):
    """Raised when a store operation fails (connection or transaction fault)."""
    pass


@dataclass(frozen=True)
class PageRecord:
    """Durable state of one crawled URL."""
    url: str
    domain: str
    content_locator: str
    active: bool = True

    @classmethod
    def for_url(cls, url: str, content_locator: str, active: bool = True) -> 'PageRecord':
        return cls(url=url, domain=get_domain(url), content_locator=content_locator, active=active)


def build_upsert_query(table: str, records: Sequence[PageRecord]) -> Tuple[str, List[Any]]:
    """
    Build one multi-row upsert for ``records``.

    Existing rows get the new locator and are forced active. ``records`` must
    not contain the same URL twice.
    """
    if not records:
        raise ValueError("Cannot build an upsert for zero records")

    placeholders = []
    values: List[Any] = []
    for idx, record in enumerate(records):
        base = idx * 4
        placeholders.append(f"(${base + 1}, ${base + 2}, ${base + 3}, ${base + 4}, now())")
        values.extend([record.url, record.domain, record.content_locator, True])

    query = f"""
        INSERT INTO {table} (url, domain, content_locator, is_active, updated_at)
        VALUES {', '.join(placeholders)}
        ON CONFLICT (url) DO UPDATE
            SET domain = EXCLUDED.domain,
                content_locator = EXCLUDED.content_locator,
                is_active = true,
                updated_at = now()
    """
    return query, values


class PageStore:
    """Abstract base class for page stores."""

    async def initialize(self):
        """Open connections and make sure the schema exists."""
        raise NotImplementedError

    async def upsert_pages(self, records: Sequence[PageRecord]) -> int:
        """Upsert ``records`` in a single transaction. Returns rows written."""
        raise NotImplementedError

    async def insert_if_absent(self, url: str, content_locator: str = UNCRAWLED_LOCATOR) -> bool:
        """Insert an active row for ``url`` unless one exists. Returns True if inserted."""
        raise NotImplementedError

    async def mark_inactive(self, url: str) -> bool:
        """Flag an existing row as inactive. Returns True if a row was updated."""
        raise NotImplementedError

    async def close(self):
        """Close store connections."""
        raise NotImplementedError


class PostgresPageStore(PageStore):
    """PostgreSQL page store backed by an asyncpg connection pool."""

    def __init__(self, config: DatabaseConfig):
        if not _IDENTIFIER.match(config.table):
            raise StoreError(f"Invalid table name: {config.table!r}")

        self.config = config
        self.table = config.table
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'rows_upserted': 0,
            'rows_inserted': 0,
            'rows_deactivated': 0,
            'transaction_errors': 0,
        }

    async def initialize(self):
        """Create the connection pool and the pages table."""
        try:
            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.database,
                min_size=self.config.pool_min_size,
                max_size=self.config.pool_max_size,
            )
            async with self.pool.acquire() as conn:
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        url TEXT PRIMARY KEY,
                        domain TEXT NOT NULL,
                        content_locator TEXT NOT NULL,
                        is_active BOOLEAN NOT NULL DEFAULT true,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {self.table}_domain_idx ON {self.table} (domain)"
                )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreError(f"Failed to initialize page store: {e}") from e

        self.logger.info(
            f"Page store initialized: {self.config.host}:{self.config.port}/{self.config.database}.{self.table}"
        )

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreError("Page store not initialized")
        return self.pool

    async def upsert_pages(self, records: Sequence[PageRecord]) -> int:
        query, values = build_upsert_query(self.table, records)
        pool = self._require_pool()

        try:
            async with pool.acquire() as conn:
                transaction = conn.transaction()
                await transaction.start()
                try:
                    self.logger.debug(f"Upserting {len(records)} unique rows into {self.table}")
                    await conn.execute(query, *values)
                except Exception:
                    try:
                        await transaction.rollback()
                    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as rollback_error:
                        self.logger.error(f"Failed to rollback transaction after upsert error: {rollback_error}")
                    raise
                await transaction.commit()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            self.stats['transaction_errors'] += 1
            raise StoreError(f"Error upserting {len(records)} rows: {e}") from e

        self.stats['rows_upserted'] += len(records)
        return len(records)

    async def insert_if_absent(self, url: str, content_locator: str = UNCRAWLED_LOCATOR) -> bool:
        pool = self._require_pool()
        try:
            status = await pool.execute(
                f"""
                INSERT INTO {self.table} (url, domain, content_locator, is_active, updated_at)
                VALUES ($1, $2, $3, true, now())
                ON CONFLICT (url) DO NOTHING
                """,
                url, get_domain(url), content_locator,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreError(f"Error inserting {url}: {e}") from e

        # Command tag is "INSERT 0 <rows>"
        inserted = status.split()[-1] == '1'
        if inserted:
            self.stats['rows_inserted'] += 1
        return inserted

    async def mark_inactive(self, url: str) -> bool:
        pool = self._require_pool()
        try:
            status = await pool.execute(
                f"UPDATE {self.table} SET is_active = false, updated_at = now() WHERE url = $1",
                url,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise StoreError(f"Error deactivating {url}: {e}") from e

        updated = status.split()[-1] != '0'
        if updated:
            self.stats['rows_deactivated'] += 1
        return updated

    def get_stats(self):
        return self.stats.copy()

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            self.logger.info("Page store connections closed")
