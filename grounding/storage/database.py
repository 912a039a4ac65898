"""
Database Connection Manager

Async PostgreSQL connection with connection pooling via asyncpg.
Driver failures are surfaced as StoreError so services can apply the
read-degrades, write-propagates policy uniformly.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg
import structlog
from asyncpg import Connection, Pool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from grounding.config import Settings, get_settings
from grounding.errors import StoreError

logger = structlog.get_logger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class Database:
    """
    Async PostgreSQL database manager with connection pooling.

    Provides:
    - Connection pooling via asyncpg
    - Transaction support
    - Query execution helpers
    - JSONB codec so JSON columns round-trip as Python objects
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._pool: Pool | None = None
        self._initialized = False

    @retry(
        retry=retry_if_exception_type(_DRIVER_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _create_pool(self) -> Pool:
        if self.settings.database_url is None:
            raise StoreError("DATABASE_URL is not configured")
        return await asyncpg.create_pool(
            dsn=self.settings.database_url.get_secret_value(),
            min_size=self.settings.db_pool_min_size,
            max_size=self.settings.db_pool_max_size,
            command_timeout=self.settings.db_command_timeout,
            init=self._init_connection,
        )

    async def connect(self) -> None:
        """Initialize the connection pool."""
        if self._pool is not None:
            logger.warning("Database pool already initialized")
            return

        logger.info(
            "Connecting to database",
            min_size=self.settings.db_pool_min_size,
            max_size=self.settings.db_pool_max_size,
        )

        try:
            self._pool = await self._create_pool()
        except _DRIVER_ERRORS as e:
            logger.error("Failed to connect to database", error=str(e))
            raise StoreError(f"Failed to connect to database: {e}") from e

        self._initialized = True
        logger.info("Database connection pool established")

    async def _init_connection(self, conn: Connection) -> None:
        """Register JSON codecs on every new pooled connection."""
        for type_name in ("json", "jsonb"):
            await conn.set_type_codec(
                type_name,
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("Database connection pool closed")

    @property
    def pool(self) -> Pool:
        """Get the connection pool."""
        if self._pool is None:
            raise StoreError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """
        Acquire a connection from the pool.

        Usage:
            async with db.acquire() as conn:
                await conn.fetch("SELECT * FROM conversation_memory")
        """
        async with self.pool.acquire() as conn:
            yield conn

    async def execute(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,
    ) -> str:
        """
        Execute a query and return status.

        Returns:
            Status string (e.g., "DELETE 3")
        """
        try:
            async with self.acquire() as conn:
                return await conn.execute(query, *args, timeout=timeout)
        except _DRIVER_ERRORS as e:
            raise StoreError(str(e)) from e

    async def fetch(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,
    ) -> list[asyncpg.Record]:
        """Fetch multiple rows."""
        try:
            async with self.acquire() as conn:
                return await conn.fetch(query, *args, timeout=timeout)
        except _DRIVER_ERRORS as e:
            raise StoreError(str(e)) from e

    async def fetchrow(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,
    ) -> asyncpg.Record | None:
        """Fetch a single row, or None if not found."""
        try:
            async with self.acquire() as conn:
                return await conn.fetchrow(query, *args, timeout=timeout)
        except _DRIVER_ERRORS as e:
            raise StoreError(str(e)) from e

    async def fetchval(
        self,
        query: str,
        *args: Any,
        column: int = 0,
        timeout: float | None = None,
    ) -> Any:
        """Fetch a single value from the given column."""
        try:
            async with self.acquire() as conn:
                return await conn.fetchval(query, *args, column=column, timeout=timeout)
        except _DRIVER_ERRORS as e:
            raise StoreError(str(e)) from e

    async def health_check(self) -> bool:
        """Check if database is healthy."""
        try:
            result = await self.fetchval("SELECT 1")
            return result == 1
        except StoreError as e:
            logger.error("Database health check failed", error=str(e))
            return False


# Global database instance
_database: Database | None = None


async def get_database() -> Database:
    """
    Get the global database instance.

    Creates and connects if not already done.
    """
    global _database

    if _database is None:
        _database = Database()
        await _database.connect()

    return _database


async def close_database() -> None:
    """Close the global database connection."""
    global _database

    if _database is not None:
        await _database.disconnect()
        _database = None


def decode_json(value: Any, default: Any = None) -> Any:
    """
    Decode a JSON/JSONB column value.

    Pooled connections decode JSONB natively; rows produced elsewhere
    (fixtures, other drivers) may still carry the raw string.
    """
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value
