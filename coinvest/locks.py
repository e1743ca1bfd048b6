# coinvest/locks.py
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Hashable, List

from coinvest.core.config import settings
from coinvest.errors import ConcurrencyConflict


class KeyedLocks:
    """One mutex per entity key, e.g. ("lot", "13878") or ("bid", "402913").

    Keys are always acquired in sorted order so two operations that need the
    same pair of entities can never deadlock each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable, timeout: float | None = None) -> Generator[None, None, None]:
        if timeout is None:
            timeout = settings.LOCK_TIMEOUT_SECONDS
        acquired: List[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=timeout):
                    raise ConcurrencyConflict(f"timed out waiting for {key!r}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


entity_locks = KeyedLocks()


def lot_key(lot_number: str):
    return ("lot", str(lot_number))


def bid_key(bid_number: str):
    return ("bid", str(bid_number))
