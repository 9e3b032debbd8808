"""Per-key mutual exclusion for operations that maintain cross-row invariants."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator, Hashable


class KeyedLock:
    """
    One lock per key, created on first use.

    Usage:
        with isometric_locks.hold(isometric_id):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        lock = self._lock_for(key)
        with lock:
            yield


# Shared by every RevisionService in the process.
isometric_locks = KeyedLock()
