"""In-memory session context storage."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from ..domain.account import AccountContext


class InMemoryContextStore:
    """Thread-safe session store; entries expire ``ttl_seconds`` after the last switch.

    A context is replaced as one dict assignment under the lock so readers see
    either the old or the new active account, never a mix. Expired entries are
    dropped when read and swept on every write, so abandoned sessions do not
    accumulate.
    """

    def __init__(self, ttl_seconds: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._contexts: dict[str, tuple[AccountContext, float]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def put(self, context: AccountContext) -> None:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._contexts.items() if expires_at <= now]
            for key in expired:
                del self._contexts[key]
            self._contexts[context.session_id] = (context, now + self._ttl)

    def get(self, session_id: str) -> AccountContext | None:
        now = self._clock()
        with self._lock:
            entry = self._contexts.get(session_id)
            if entry is None:
                return None
            context, expires_at = entry
            if expires_at <= now:
                del self._contexts[session_id]
                return None
            return context

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._contexts.pop(session_id, None)
