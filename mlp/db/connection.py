"""Async SQLite connection pool with WAL mode and schema initialization."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from mlp.db.queries import Query
from mlp.db.schema import build_schema_sql
from mlp.entities.registry import SchemaRegistry
from mlp.errors import DatabaseError, ForeignKeyViolationError

logger = logging.getLogger(__name__)


class Client:
    """One checked-out connection. Translates sqlite errors into engine errors."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    async def query(self, query: Query) -> aiosqlite.Cursor:
        """Execute a single statement. No implicit commit."""
        try:
            return await self._conn.execute(query.sql, query.params)
        except aiosqlite.IntegrityError as e:
            if "FOREIGN KEY" in str(e).upper():
                raise ForeignKeyViolationError(str(e)) from e
            raise DatabaseError(str(e)) from e
        except aiosqlite.Error as e:
            raise DatabaseError(str(e)) from e

    async def fetchone(self, query: Query) -> dict[str, Any] | None:
        cursor = await self.query(query)
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetchall(self, query: Query) -> list[dict[str, Any]]:
        cursor = await self.query(query)
        return [dict(row) for row in await cursor.fetchall()]

    async def executescript(self, sql: str) -> None:
        try:
            await self._conn.executescript(sql)
        except aiosqlite.Error as e:
            raise DatabaseError(str(e)) from e

    async def begin(self) -> None:
        # Take the write lock up front: operations read before they write, and a
        # deferred BEGIN cannot upgrade once another connection has committed.
        await self.query(Query("BEGIN IMMEDIATE"))

    async def commit(self) -> None:
        await self.query(Query("COMMIT"))

    async def rollback(self) -> None:
        await self.query(Query("ROLLBACK"))

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction


class Database:
    """Pool of aiosqlite connections shared by all in-flight operations.

    Connections run with isolation_level=None: BEGIN/COMMIT/ROLLBACK are only
    ever issued explicitly through Client. An in-memory database gets a
    single connection, since each sqlite connection would otherwise see its
    own empty database.
    """

    def __init__(
        self,
        connections: list[aiosqlite.Connection],
        checkout_timeout: float = 30.0,
    ) -> None:
        self._connections = connections
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue()
        for conn in connections:
            self._pool.put_nowait(conn)
        self._checkout_timeout = checkout_timeout
        self._closed = False

    @classmethod
    async def connect(
        cls,
        path: str = "mlp.db",
        registry: SchemaRegistry | None = None,
        pool_size: int = 4,
        checkout_timeout: float = 30.0,
    ) -> "Database":
        """Open the pool, enable WAL + foreign keys, and create tables if a registry is given."""
        size = 1 if path == ":memory:" else max(1, pool_size)
        connections: list[aiosqlite.Connection] = []
        try:
            for _ in range(size):
                connections.append(await cls._open(path))
        except aiosqlite.Error as e:
            for conn in connections:
                await conn.close()
            raise DatabaseError(f"Could not open database {path!r}: {e}") from e

        db = cls(connections, checkout_timeout=checkout_timeout)
        if registry is not None:
            await db.ensure_schema(registry)
        return db

    @staticmethod
    async def _open(path: str) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        try:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute("PRAGMA busy_timeout=5000")
        except aiosqlite.Error:
            await conn.close()
            raise
        return conn

    async def ensure_schema(self, registry: SchemaRegistry) -> None:
        """Create tables if they don't exist. Idempotent."""
        async with self.acquire() as client:
            await client.executescript(build_schema_sql(registry))

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Client]:
        """Check a connection out of the pool; it goes back on every exit path."""
        if self._closed:
            raise DatabaseError("Database pool is closed")
        try:
            conn = await asyncio.wait_for(self._pool.get(), self._checkout_timeout)
        except TimeoutError as e:
            raise DatabaseError("Timed out waiting for a database connection") from e

        client = Client(conn)
        try:
            yield client
        finally:
            try:
                if conn.in_transaction:
                    logger.warning("Connection released with an open transaction, rolling back")
                    await client.rollback()
            except DatabaseError:
                logger.exception("Rollback on release failed")
            finally:
                self._pool.put_nowait(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Client]:
        """BEGIN on entry, COMMIT on success, ROLLBACK before any error propagates.

        A failing ROLLBACK is logged; the error that aborted the transaction
        is the one that propagates.
        """
        async with self.acquire() as client:
            await client.begin()
            try:
                yield client
            except BaseException:
                try:
                    await client.rollback()
                except DatabaseError:
                    logger.exception("Rollback failed")
                raise
            await client.commit()

    # -- Convenience wrappers (single statement, own checkout) --

    async def execute(self, sql: str, params: tuple | None = None) -> None:
        async with self.acquire() as client:
            await client.query(Query(sql, params or ()))

    async def fetchone(self, sql: str, params: tuple | None = None) -> dict[str, Any] | None:
        async with self.acquire() as client:
            return await client.fetchone(Query(sql, params or ()))

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[dict[str, Any]]:
        async with self.acquire() as client:
            return await client.fetchall(Query(sql, params or ()))

    async def close(self) -> None:
        """Close every pooled connection."""
        self._closed = True
        for conn in self._connections:
            await conn.close()
