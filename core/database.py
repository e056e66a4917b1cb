"""
Read-only legacy database access with SQLAlchemy async.

Connections come from a pooled async engine pointed at the SSH tunnel's
local port. Every session checked out by the client is switched to
read-only before use, and large tables are read through a server-side
cursor so memory use depends on the fetch size, not the table size.
"""

import logging
import re
import uuid
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from core.exceptions import DatabaseConnectionError, MigrationPhase
from core.retry import with_auto_retry

logger = logging.getLogger(__name__)

READ_ONLY_SESSION_SQL = "SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY"
READ_ONLY_TRANSACTION_SQL = "SET TRANSACTION READ ONLY"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Row = Dict[str, Any]


class DatabaseConfig(BaseModel):
    host: str
    port: int = 5432
    database: str
    user: str
    password: str
    pool_size: int = 10
    read_only: bool = True


def create_legacy_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create a pooled asyncpg engine for the legacy database."""
    url = URL.create(
        "postgresql+asyncpg",
        username=config.user,
        password=config.password,
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return create_async_engine(
        url,
        echo=False,
        pool_size=config.pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        future=True
    )


class LegacyDatabaseClient:
    """
    Read-only client over an AsyncEngine.

    A connection is checked out per query or cursor stream and returned
    deterministically on success or failure; retries always check out a new
    one.
    """

    def __init__(self, engine: AsyncEngine, read_only: bool = True):
        self.engine = engine
        self.read_only = read_only

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """Check out a connection, made read-only when the client is."""
        async with self.engine.connect() as conn:
            if self.read_only:
                await conn.execute(text(READ_ONLY_SESSION_SQL))
                await conn.commit()
            yield conn

    @asynccontextmanager
    async def read_only_transaction(self) -> AsyncIterator[AsyncConnection]:
        """
        Run a block inside ``BEGIN ... READ ONLY``.

        Commits on normal exit and rolls back if the block raises.
        """
        async with self.connection() as conn:
            async with conn.begin():
                await conn.execute(text(READ_ONLY_TRANSACTION_SQL))
                yield conn

    async def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        """Run a query in a read-only transaction and return all rows."""
        try:
            async with self.read_only_transaction() as conn:
                result = await conn.execute(text(sql), params or {})
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                f"Query failed: {e}",
                phase=MigrationPhase.EXTRACT,
                metadata={"query": sql[:200]},
                original_exception=e
            )

    async def iter_rows(
        self,
        sql: str,
        batch_size: int = 1000,
        params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[Row]:
        """
        Lazily yield rows of ``sql`` in cursor order.

        Opens a read-only transaction, declares a server-side cursor and
        fetches ``batch_size`` rows at a time until a fetch comes back
        empty. The cursor is closed and the transaction ended on every exit
        path, including the consumer abandoning the iteration.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        cursor_name = f"migration_cursor_{uuid.uuid4().hex[:12]}"

        async with self.read_only_transaction() as conn:
            await conn.execute(text(f"DECLARE {cursor_name} NO SCROLL CURSOR FOR {sql}"), params or {})
            try:
                while True:
                    result = await conn.execute(text(f"FETCH {batch_size} FROM {cursor_name}"))
                    rows = result.mappings().all()
                    if not rows:
                        break
                    for row in rows:
                        yield dict(row)
            finally:
                try:
                    await conn.execute(text(f"CLOSE {cursor_name}"))
                except SQLAlchemyError as e:
                    # Aborted transaction; the rollback below discards the cursor
                    logger.debug(f"Could not close cursor {cursor_name}: {e}")

    async def stream_query(
        self,
        sql: str,
        on_row: Callable[[Row], Awaitable[Any]],
        batch_size: int = 1000,
        params: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Feed every row of ``sql`` to ``on_row`` sequentially.

        The callback is awaited before the next row is delivered, so rows are
        processed in table order and never concurrently.

        Returns:
            Number of rows processed
        """
        count = 0
        try:
            async with aclosing(self.iter_rows(sql, batch_size, params)) as rows:
                async for row in rows:
                    await on_row(row)
                    count += 1
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                f"Streaming query failed after {count} rows: {e}",
                phase=MigrationPhase.EXTRACT,
                metadata={"query": sql[:200], "rows_processed": count},
                original_exception=e
            )

        logger.debug(f"Streamed {count} rows")
        return count

    async def test_connection(self) -> bool:
        try:
            async with self.connection() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    async def get_version(self) -> str:
        rows = await self.query("SELECT version() AS version")
        return str(rows[0]["version"]) if rows else "unknown"

    async def get_table_count(self, table: str) -> int:
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        rows = await self.query(f"SELECT COUNT(*) AS count FROM {table}")
        return int(rows[0]["count"])

    async def count_query(self, sql: str) -> int:
        """Number of rows ``sql`` would return, counted by the database."""
        rows = await self.query(f"SELECT COUNT(*) AS count FROM ({sql}) AS source")
        return int(rows[0]["count"])

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Legacy database pool closed")


async def create_database_client(
    config: DatabaseConfig,
    max_attempts: int = 3,
    engine_factory: Callable[[DatabaseConfig], AsyncEngine] = create_legacy_engine
) -> LegacyDatabaseClient:
    """
    Build a client and verify it can reach the database, retrying under the
    database retry policy (backoff 1s, 2s, ...).
    """

    async def attempt() -> LegacyDatabaseClient:
        client = LegacyDatabaseClient(engine_factory(config), read_only=config.read_only)
        if not await client.test_connection():
            await client.close()
            raise DatabaseConnectionError(
                f"Could not connect to database {config.database} at {config.host}:{config.port}",
                phase=MigrationPhase.EXTRACT,
                metadata={"host": config.host, "port": config.port}
            )
        return client

    def on_retry(error: BaseException, attempt_number: int) -> None:
        logger.warning(f"Database connection attempt {attempt_number}/{max_attempts} failed: {error}")

    client = await with_auto_retry(
        attempt,
        MigrationPhase.EXTRACT,
        metadata={"host": config.host, "port": config.port},
        on_retry=on_retry,
        max_retries=max_attempts - 1
    )
    logger.info(f"Connected to legacy database {config.database} (read_only={config.read_only})")
    return client
