"""
Per-credit serialization.

Every mutation of a credit's installments or balance runs while holding that
credit's lock. Locks for different credits are independent.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class CreditLockRegistry:
    """Lazily created reentrant lock per credit id"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, credit_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(credit_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[credit_id] = lock
            return lock

    @contextmanager
    def hold(self, *credit_ids: str):
        """
        Acquire the locks of several credits.

        Ids are acquired in sorted order so two batches touching the same
        credits cannot deadlock.
        """
        locks = [self.lock_for(credit_id) for credit_id in sorted(set(credit_ids))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
