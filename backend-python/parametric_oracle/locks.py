"""Per-key exclusive locks (one per policy id, one per claim id)."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """Re-entrant lock per key; entries are dropped once nobody holds or waits.

    Re-entrancy lets the orchestrator call the payout dispatcher while it
    already holds the policy lock.  Acquire policy keys before claim keys.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str, timeout: float = -1) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
        acquired = lock.acquire(timeout=timeout)
        try:
            if not acquired:
                raise TimeoutError(f"could not lock '{key}' within {timeout}s")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
