"""SQLite-backed persistence for the progress engine."""

from __future__ import annotations

import logging
import pickle
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from .domain import (
    Assembly,
    NonComplianceRecord,
    OutsourcedCoatingRecord,
    ProgressState,
    QualityCheck,
    StepHistoryEntry,
)
from .repository import (
    ConcurrencyConflictError,
    DuplicateRecordError,
    RecordNotFoundError,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists records inside SQLite."""

    def __init__(self, database: "EngineDatabase", table: str) -> None:
        self._database = database
        self._table = table
        self._database.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "id TEXT PRIMARY KEY, version INTEGER NOT NULL DEFAULT 0, "
            "payload BLOB NOT NULL)"
        )

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        cursor = self._database.execute(
            f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
        )
        return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        cursor = self._database.execute(f"SELECT COUNT(1) FROM {self._table}")
        value = cursor.fetchone()
        return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        if item_id in self:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._database.execute(
            f"INSERT INTO {self._table} (id, version, payload) VALUES (?, ?, ?)",
            (item_id, getattr(item, "version", 0), pickle.dumps(item)),
        )

    def upsert(self, item_id: str, item: T) -> None:
        self._database.execute(
            f"INSERT INTO {self._table} (id, version, payload) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, "
            "version = excluded.version",
            (item_id, getattr(item, "version", 0), pickle.dumps(item)),
        )

    def update(self, item_id: str, item: T) -> None:
        """Compare-and-swap on the stored ``version`` column."""

        expected = getattr(item, "version")
        setattr(item, "version", expected + 1)
        cursor = self._database.execute(
            f"UPDATE {self._table} SET payload = ?, version = ? "
            "WHERE id = ? AND version = ?",
            (pickle.dumps(item), expected + 1, item_id, expected),
        )
        if cursor.rowcount == 1:
            return
        setattr(item, "version", expected)
        if item_id not in self:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        raise ConcurrencyConflictError(f"Record {item_id!r} was modified concurrently")

    def get(self, item_id: str) -> T:
        cursor = self._database.execute(
            f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
        )
        row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0])

    def list(self) -> List[T]:
        cursor = self._database.execute(
            f"SELECT payload FROM {self._table} ORDER BY id"
        )
        return [pickle.loads(row[0]) for row in cursor.fetchall()]

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [item for item in self.list() if predicate(item)]


class EngineDatabase:
    """Convenience facade bundling SQLite repositories for all aggregates.

    Each thread gets its own connection. :meth:`atomic` opens a
    ``BEGIN IMMEDIATE`` transaction so that concurrent writers, including
    other processes sharing the file, are serialised by SQLite.
    ``numbering_lock`` orders NCR numbering between threads of this process;
    other processes are held off by the immediate write lock.
    """

    def __init__(self, path: str, *, timeout: float = 30.0) -> None:
        if path in {"", ":memory:"}:
            raise ValueError("EngineDatabase needs a file path; use InMemoryStore instead")
        self._path = path
        self._timeout = timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self.numbering_lock = threading.Lock()
        self.assemblies = SQLiteRepository[Assembly](self, "assemblies")
        self.progress = SQLiteRepository[ProgressState](self, "progress_states")
        self.quality_checks = SQLiteRepository[QualityCheck](self, "quality_checks")
        self.ncrs = SQLiteRepository[NonComplianceRecord](self, "ncrs")
        self.step_history = SQLiteRepository[StepHistoryEntry](self, "step_history")
        self.coatings = SQLiteRepository[OutsourcedCoatingRecord](
            self, "outsourced_coatings"
        )

    @property
    def connection(self) -> sqlite3.Connection:
        connection = getattr(self._local, "connection", None)
        if connection is None:
            connection = sqlite3.connect(
                self._path,
                timeout=self._timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            self._local.connection = connection
            self._local.depth = 0
            with self._connections_lock:
                self._connections.append(connection)
        return connection

    def execute(self, sql: str, parameters: tuple = ()) -> sqlite3.Cursor:
        return self.connection.execute(sql, parameters)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        connection = self.connection
        if self._local.depth:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return
        connection.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield
        except BaseException:
            connection.execute("ROLLBACK")
            raise
        else:
            connection.execute("COMMIT")
        finally:
            self._local.depth = 0

    def close(self) -> None:
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections.clear()
        self._local = threading.local()
        logger.debug("Closed database %s", self._path)

    def __enter__(self) -> "EngineDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "EngineDatabase"]
