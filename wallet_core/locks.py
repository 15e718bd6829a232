"""
Keyed Lock Registry

Per-key mutual exclusion for balance read-modify-write. A unit of work that
touches several balances acquires every key in one global sorted order so
two units of work over overlapping keys cannot deadlock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class KeyedLockRegistry:
    """Hands out one re-entrant lock per key"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[Tuple[str, ...]]:
        """Acquire the locks for all keys (deduplicated, sorted) until exit"""
        ordered = tuple(sorted(set(keys)))
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


def balance_key(table: str, record_id: str) -> str:
    """Lock key for a balance-bearing record"""
    return f"balance:{table}:{record_id}"


def reference_key(reference: str) -> str:
    """Lock key for a settlement reference"""
    return f"reference:{reference}"
