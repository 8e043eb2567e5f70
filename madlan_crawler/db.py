# madlan_crawler/db.py
"""Storage port and its two embedded backends.

Every port method is a coroutine. The blocking driver call runs in a worker
thread while the port's lock is held, so the port is also the single-writer
serialization point for the whole process: a transaction opened by one task
blocks storage access from every other task until it commits or rolls back.
Calls made from inside ``transaction(fn)`` by the same task bypass the lock
(nested ``transaction`` calls simply run ``fn``).

SQL is written with ``?`` positional placeholders, which both drivers accept.
"""
import abc
import asyncio
import contextvars
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import duckdb
from sqlalchemy import create_engine, event, exc as sa_exc
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import CreateTable
from sqlalchemy.dialects import sqlite as sqlite_dialect

from .errors import IntegrityViolation, StorageError, StorageInitError
from .utils import logger

Base = declarative_base()

T = TypeVar("T")
Row = Dict[str, Any]


class StoragePort(abc.ABC):
    """Backend-agnostic transactional query interface."""

    #: whether INSERT without an explicit id gets a generated one
    supports_identity = False

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()
        self._in_tx = contextvars.ContextVar(f"storage_tx_{id(self)}", default=False)
        self._ready = False

    # -- backend hooks (blocking, called from a worker thread) -----------------
    @abc.abstractmethod
    def _open(self) -> None: ...

    @abc.abstractmethod
    def _create_schema(self) -> None: ...

    @abc.abstractmethod
    def _run(self, sql: str, params: Sequence[Any], fetch: bool): ...

    @abc.abstractmethod
    def _begin(self) -> None: ...

    @abc.abstractmethod
    def _commit(self) -> None: ...

    @abc.abstractmethod
    def _rollback(self) -> None: ...

    @abc.abstractmethod
    def _close(self) -> None: ...

    # -- public API ------------------------------------------------------------
    async def initialize(self) -> None:
        """Open the store and create any missing tables. Safe to call twice."""
        if self._ready:
            return
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            async with self._lock:
                await self._offload(self._open)
                await self._offload(self._create_schema)
        except Exception as e:
            raise StorageInitError(f"cannot initialize {type(self).__name__} at {self.path}: {e}") from e
        self._ready = True
        logger.info("Storage initialized: %s (%s)", self.path, type(self).__name__)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        return await self._call(sql, params, True)

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = await self.query(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement; returns the affected row count (-1 if unknown)."""
        return await self._call(sql, params, False)

    async def transaction(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self._in_tx.get():
            return await fn()
        self._ensure_ready()
        async with self._lock:
            token = self._in_tx.set(True)
            try:
                await self._offload(self._begin)
                try:
                    result = await fn()
                except BaseException:
                    await self._offload(self._rollback)
                    raise
                await self._offload(self._commit)
                return result
            finally:
                self._in_tx.reset(token)

    async def close(self) -> None:
        if not self._ready:
            return
        async with self._lock:
            await self._offload(self._close)
        self._ready = False
        logger.info("Storage closed: %s", self.path)

    # -- internals -------------------------------------------------------------
    async def _offload(self, fn, *args):
        # A cancelled caller still waits for the driver call so the lock is
        # never released while a worker thread holds the connection.
        fut = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            await asyncio.wait([fut])
            raise

    def _ensure_ready(self):
        if not self._ready:
            raise StorageError("storage not initialized; call initialize() first")

    async def _call(self, sql, params, fetch):
        self._ensure_ready()
        params = tuple(params or ())
        if self._in_tx.get():
            return await self._offload(self._run, sql, params, fetch)
        async with self._lock:
            return await self._offload(self._run, sql, params, fetch)


class SqliteStorage(StoragePort):
    """Embedded single-writer store, driven through a SQLAlchemy engine."""

    supports_identity = True

    def __init__(self, path: str):
        super().__init__(path)
        self.engine = None
        self._conn = None
        self._tx = None

    def _open(self):
        self.engine = create_engine(
            f"sqlite:///{self.path}",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(self.engine, "connect")
        def _enable_fks(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        self._conn = self.engine.connect()

    def _create_schema(self):
        from . import models  # noqa: F401 ensure models are imported so tables are known
        Base.metadata.create_all(bind=self._conn)
        self._conn.commit()

    def _run(self, sql, params, fetch):
        try:
            if self._tx is not None:
                return self._exec(sql, params, fetch)
            with self._conn.begin():
                return self._exec(sql, params, fetch)
        except sa_exc.IntegrityError as e:
            raise IntegrityViolation(str(e.orig)) from e
        except sa_exc.SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def _exec(self, sql, params, fetch):
        result = self._conn.exec_driver_sql(sql, params)
        if fetch:
            return [dict(r._mapping) for r in result]
        return result.rowcount

    def _begin(self):
        self._tx = self._conn.begin()

    def _commit(self):
        tx, self._tx = self._tx, None
        tx.commit()

    def _rollback(self):
        tx, self._tx = self._tx, None
        if tx is not None and tx.is_active:
            tx.rollback()

    def _close(self):
        self._conn.close()
        self.engine.dispose()


class DuckDBStorage(StoragePort):
    """Embedded analytical columnar store (no identity columns: ids are manual)."""

    supports_identity = False

    def __init__(self, path: str):
        super().__init__(path)
        self._conn = None

    def _open(self):
        self._conn = duckdb.connect(self.path)

    def _create_schema(self):
        from . import models  # noqa: F401
        dialect = sqlite_dialect.dialect()
        for table in Base.metadata.sorted_tables:
            ddl = CreateTable(table, include_foreign_key_constraints=[], if_not_exists=True)
            self._conn.execute(str(ddl.compile(dialect=dialect)))

    def _run(self, sql, params, fetch):
        try:
            cur = self._conn.execute(sql, list(params))
            if fetch:
                cols = [d[0] for d in cur.description or ()]
                return [dict(zip(cols, row)) for row in cur.fetchall()]
            if cur.description:
                row = cur.fetchone()
                return int(row[0]) if row and isinstance(row[0], int) else -1
            return -1
        except duckdb.ConstraintException as e:
            raise IntegrityViolation(str(e)) from e
        except duckdb.Error as e:
            raise StorageError(str(e)) from e

    def _begin(self):
        self._conn.begin()

    def _commit(self):
        self._conn.commit()

    def _rollback(self):
        self._conn.rollback()

    def _close(self):
        self._conn.close()


def open_storage(backend: str, path: str) -> StoragePort:
    """Create (but do not initialize) the adapter for ``backend``."""
    if backend == "sqlite":
        return SqliteStorage(path)
    if backend == "duckdb":
        return DuckDBStorage(path)
    raise StorageError(f"unknown storage backend: {backend}")
