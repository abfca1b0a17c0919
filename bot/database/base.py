from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import asyncpg

from core.errors import PersistenceFailedError

LOGGER = logging.getLogger(__name__)

INTEGRITY_ERRORS: tuple[type[BaseException], ...] = (
    aiosqlite.IntegrityError,
    asyncpg.IntegrityConstraintViolationError,
)
DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    aiosqlite.Error,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


class IntegrityViolationError(PersistenceFailedError):
    """A write was rejected by a uniqueness or check constraint."""


@dataclass(slots=True)
class DatabaseDsn:
    driver: str
    value: str


def parse_database_dsn(url: str) -> DatabaseDsn:
    if url.startswith("sqlite:///"):
        return DatabaseDsn(driver="sqlite", value=url.replace("sqlite:///", "", 1))
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return DatabaseDsn(driver="postgresql", value=url)
    raise ValueError("Unsupported database URL. Use sqlite:/// or postgresql://")


def _qmark_to_dollar(query: str) -> str:
    idx = 1
    out: list[str] = []
    for char in query:
        if char == "?":
            out.append(f"${idx}")
            idx += 1
        else:
            out.append(char)
    return "".join(out)


def _status_rowcount(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 2" or "INSERT 0 1".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except INTEGRITY_ERRORS as exc:
        raise IntegrityViolationError(detail=str(exc)) from exc
    except DRIVER_ERRORS as exc:
        raise PersistenceFailedError(detail=str(exc)) from exc


class DatabaseSession:
    """Runs statements on one connection without committing.

    Repositories accept either a session or the ``Database`` itself, so the
    same query code serves both autocommit calls and multi-statement
    transactions.
    """

    def __init__(self, driver: str, conn: Any) -> None:
        self._driver = driver
        self._conn = conn

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        params = params or []
        with _translate_errors():
            if self._driver == "sqlite":
                cursor = await self._conn.execute(query, tuple(params))
                return max(cursor.rowcount, 0)
            status = await self._conn.execute(_qmark_to_dollar(query), *params)
            return _status_rowcount(status)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        params = params or []
        with _translate_errors():
            if self._driver == "sqlite":
                cursor = await self._conn.execute(query, tuple(params))
                row = await cursor.fetchone()
            else:
                row = await self._conn.fetchrow(_qmark_to_dollar(query), *params)
        if row is None:
            return None
        return dict(row)

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        params = params or []
        with _translate_errors():
            if self._driver == "sqlite":
                cursor = await self._conn.execute(query, tuple(params))
                rows = await cursor.fetchall()
            else:
                rows = await self._conn.fetch(_qmark_to_dollar(query), *params)
        return [dict(row) for row in rows]


class Database:
    def __init__(self, url: str, timeout_seconds: int = 30, pool_min_size: int = 2, pool_max_size: int = 10) -> None:
        self._dsn = parse_database_dsn(url)
        self._timeout_seconds = timeout_seconds
        self._pool_min_size = pool_min_size
        self._pool_max_size = pool_max_size
        self._sqlite: aiosqlite.Connection | None = None
        self._pg_pool: asyncpg.Pool | None = None
        self._sqlite_lock = asyncio.Lock()

    @property
    def driver(self) -> str:
        return self._dsn.driver

    async def connect(self) -> None:
        if self.driver == "sqlite":
            sqlite_path = Path(self._dsn.value)
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite = await aiosqlite.connect(sqlite_path, timeout=self._timeout_seconds)
            self._sqlite.row_factory = aiosqlite.Row
            await self._sqlite.execute("PRAGMA journal_mode = WAL;")
            await self._sqlite.execute("PRAGMA foreign_keys = ON;")
            await self._sqlite.commit()
            LOGGER.info("Connected to SQLite: %s", sqlite_path)
            return
        self._pg_pool = await asyncpg.create_pool(
            dsn=self._dsn.value,
            min_size=self._pool_min_size,
            max_size=self._pool_max_size,
            timeout=self._timeout_seconds,
        )
        LOGGER.info("Connected to PostgreSQL")

    async def close(self) -> None:
        if self._sqlite:
            await self._sqlite.close()
            self._sqlite = None
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None

    @asynccontextmanager
    async def _autocommit(self) -> AsyncIterator[DatabaseSession]:
        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                try:
                    yield DatabaseSession("sqlite", self._sqlite)
                    with _translate_errors():
                        await self._sqlite.commit()
                except Exception:
                    await self._sqlite.rollback()
                    raise
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            yield DatabaseSession("postgresql", conn)

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        async with self._autocommit() as session:
            return await session.execute(query, params)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        async with self._autocommit() as session:
            return await session.fetchone(query, params)

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        async with self._autocommit() as session:
            return await session.fetchall(query, params)

    async def executescript(self, sql_script: str) -> None:
        if self.driver == "sqlite":
            assert self._sqlite is not None
            async with self._sqlite_lock:
                with _translate_errors():
                    await self._sqlite.executescript(sql_script)
                    await self._sqlite.commit()
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            with _translate_errors():
                await conn.execute(sql_script)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DatabaseSession]:
        """Yield a session whose statements commit or roll back together."""
        if self.driver == "sqlite":
            assert self._sqlite is not None
            conn = self._sqlite
            async with self._sqlite_lock:
                with _translate_errors():
                    await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield DatabaseSession("sqlite", conn)
                    with _translate_errors():
                        await conn.commit()
                except BaseException:
                    await conn.rollback()
                    raise
            return

        assert self._pg_pool is not None
        async with self._pg_pool.acquire() as conn:
            with _translate_errors():
                async with conn.transaction():
                    yield DatabaseSession("postgresql", conn)
