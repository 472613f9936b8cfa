"""In-memory repositories and unit of work used by the engine."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import (
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Tuple,
    TypeVar,
)

from .domain import (
    Assembly,
    NonComplianceRecord,
    OutsourcedCoatingRecord,
    ProgressState,
    QualityCheck,
    StepHistoryEntry,
)

T = TypeVar("T")

_INSERT = "insert"
_UPSERT = "upsert"


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing."""


class ConcurrencyConflictError(RepositoryError):
    """Raised when a versioned record changed since it was read."""


class _Transaction:
    def __init__(self) -> None:
        # repository -> item id -> (expected version | marker, staged copy)
        self.writes: Dict["InMemoryRepository", Dict[str, Tuple[object, object]]] = {}

    def staged(self, repo: "InMemoryRepository") -> Dict[str, Tuple[object, object]]:
        return self.writes.setdefault(repo, {})


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary.

    Records are copied on the way in and out, so callers never share state
    with the store. Records carrying a ``version`` attribute are updated with
    a compare-and-swap through :meth:`update`.
    """

    def __init__(self, store: Optional["InMemoryStore"] = None) -> None:
        self._items: MutableMapping[str, T] = {}
        self._store = store or InMemoryStore.detached()

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        staged = self._staged()
        if staged is not None and item_id in staged:
            return True
        return item_id in self._items

    def __len__(self) -> int:
        return len(self.list())

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def _staged(self) -> Optional[Dict[str, Tuple[object, object]]]:
        tx = self._store.current_transaction()
        return tx.staged(self) if tx is not None else None

    def _write(self, item_id: str, expected: object, item: T) -> None:
        staged = self._staged()
        if staged is None:
            with self._store.lock:
                self._validate(item_id, expected)
                self._items[item_id] = copy.deepcopy(item)
            return
        if item_id in staged:
            expected = staged[item_id][0]
        staged[item_id] = (expected, copy.deepcopy(item))

    def _validate(self, item_id: str, expected: object) -> None:
        if expected == _INSERT and item_id in self._items:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        if isinstance(expected, int):
            current = self._items.get(item_id)
            if current is None or getattr(current, "version") != expected:
                raise ConcurrencyConflictError(
                    f"Record {item_id!r} was modified concurrently"
                )

    def add(self, item_id: str, item: T) -> None:
        if item_id in self:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._write(item_id, _INSERT, item)

    def upsert(self, item_id: str, item: T) -> None:
        self._write(item_id, _UPSERT, item)

    def update(self, item_id: str, item: T) -> None:
        """Store ``item`` if nobody changed the record since it was read."""

        current = self.get(item_id)
        expected = getattr(item, "version")
        if getattr(current, "version") != expected:
            raise ConcurrencyConflictError(
                f"Record {item_id!r} was modified concurrently"
            )
        setattr(item, "version", expected + 1)
        self._write(item_id, expected, item)

    def get(self, item_id: str) -> T:
        staged = self._staged()
        if staged is not None and item_id in staged:
            return copy.deepcopy(staged[item_id][1])  # type: ignore[return-value]
        try:
            return copy.deepcopy(self._items[item_id])
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def list(self) -> List[T]:
        items: Dict[str, T] = dict(self._items)
        staged = self._staged()
        if staged:
            for item_id, (_, item) in staged.items():
                items[item_id] = item  # type: ignore[assignment]
        return [copy.deepcopy(item) for item in items.values()]

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [item for item in self.list() if predicate(item)]


class InMemoryStore:
    """Bundles the engine's repositories behind one unit of work.

    Writes made inside :meth:`atomic` are journalled per thread and applied
    together on exit; an exception discards the journal.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.numbering_lock = threading.Lock()
        self._local = threading.local()
        self.assemblies = InMemoryRepository[Assembly](self)
        self.progress = InMemoryRepository[ProgressState](self)
        self.quality_checks = InMemoryRepository[QualityCheck](self)
        self.ncrs = InMemoryRepository[NonComplianceRecord](self)
        self.step_history = InMemoryRepository[StepHistoryEntry](self)
        self.coatings = InMemoryRepository[OutsourcedCoatingRecord](self)

    @classmethod
    def detached(cls) -> "InMemoryStore":
        store = cls.__new__(cls)
        store.lock = threading.RLock()
        store.numbering_lock = threading.Lock()
        store._local = threading.local()
        return store

    def current_transaction(self) -> Optional[_Transaction]:
        return getattr(self._local, "transaction", None)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self.current_transaction() is not None:
            yield
            return
        transaction = _Transaction()
        self._local.transaction = transaction
        try:
            yield
        finally:
            self._local.transaction = None
        with self.lock:
            for repo, writes in transaction.writes.items():
                for item_id, (expected, _) in writes.items():
                    repo._validate(item_id, expected)
            for repo, writes in transaction.writes.items():
                for item_id, (_, item) in writes.items():
                    repo._items[item_id] = item

    def close(self) -> None:
        """Nothing to release; mirrors the SQLite database facade."""


__all__ = [
    "InMemoryRepository",
    "InMemoryStore",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "ConcurrencyConflictError",
]
