"""
Process-wide registry of named locks.

Booking creation takes the lock for its property so that the overlap check
and the insert run as one unit inside this process; the property row lock
taken with SELECT ... FOR UPDATE covers other processes on PostgreSQL.

Strategy:
- One threading.Lock per key, created on first use
- Reference counts so idle keys are dropped instead of accumulating
- The registry itself is guarded by a single mutex
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._refcounts: dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def _acquire_entry(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return lock

    def _release_entry(self, key: str) -> None:
        with self._registry_lock:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """
        Hold the exclusive lock for ``key`` for the duration of the block.

        Example:
            >>> with property_locks.hold("property-42"):
            ...     create_booking_in_transaction()
        """
        lock = self._acquire_entry(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._release_entry(key)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


property_locks = KeyedLocks()
payment_locks = KeyedLocks()
