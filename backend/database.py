"""
Database Module
===============
AsyncPG connection pool and schema for the durable staged-submission store.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Startup migrations (staged_submissions, staged_attachments)

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import asyncpg

from config import settings

# Configure logger
logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS staged_submissions (
        id VARCHAR(64) PRIMARY KEY,
        fields JSON NOT NULL DEFAULT '{}',
        amount INTEGER NOT NULL CHECK (amount > 0),
        currency VARCHAR(3) NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'staged',
        checkout_session_id VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        paid_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ,
        claimed_at TIMESTAMPTZ,
        claim_token VARCHAR(64),
        delivery_attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staged_attachments (
        submission_id VARCHAR(64) NOT NULL
            REFERENCES staged_submissions(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        name VARCHAR(255) NOT NULL,
        filename VARCHAR(255) NOT NULL,
        content_type VARCHAR(255) NOT NULL,
        content BYTEA NOT NULL,
        PRIMARY KEY (submission_id, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_submissions_status ON staged_submissions(status)",
    "CREATE INDEX IF NOT EXISTS idx_submissions_expires ON staged_submissions(expires_at)",
    "ALTER TABLE staged_submissions ADD COLUMN IF NOT EXISTS claim_token VARCHAR(64)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(
        self,
        dsn: str = settings.DATABASE_URL,
        min_size: int = settings.DB_MIN_POOL_SIZE,
        max_size: int = settings.DB_MAX_POOL_SIZE,
    ):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self):
        """Initialize the connection pool and run migrations"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
            )
            logger.info("database_pool_initialized", max_size=self._max_size)
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

        await self._run_migrations()

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection inside a transaction"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)

        logger.info("database_migrations_complete", count=len(MIGRATIONS))
