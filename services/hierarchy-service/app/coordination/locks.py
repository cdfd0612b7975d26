"""In-process per-parent mutual exclusion for structural mutations."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from ..domain.errors import Conflict


class ParentLockRegistry:
    """Thread-safe registry handing out one lock per parent account.

    Entries are reference counted so the registry does not grow with the
    number of accounts ever touched.
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        """Initialise the guard lock and per-key storage."""
        self._default_timeout = default_timeout
        self._locks: dict[str, tuple[Lock, int]] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the lock for ``key``; raise :class:`Conflict` if it cannot be taken in time."""
        wait = self._default_timeout if timeout is None else timeout
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=wait):
                raise Conflict(f"timed out waiting for structural lock on {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def _checkout(self, key: str) -> Lock:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = Lock()
            self._locks[key] = (lock, refs + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            lock, refs = self._locks[key]
            if refs <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
