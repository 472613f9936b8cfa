"""Locks that serialise work on a single assembly."""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class AssemblyLocks:
    """Hands out one lock per assembly id.

    Operations on different assemblies never wait on each other; only the
    registry itself is guarded while a lock is looked up or created. Entries
    are weak, so a lock disappears once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, assembly_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(assembly_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[assembly_id] = lock
            return lock

    @contextmanager
    def hold(self, assembly_id: str) -> Iterator[None]:
        lock = self.lock_for(assembly_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = ["AssemblyLocks"]
