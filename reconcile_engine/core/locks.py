# reconcile_engine/core/locks.py
"""Per-stack lock table. Different stacks never share a lock."""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List

from reconcile_engine.core.errors import Conflict
from reconcile_engine.core.models import StackKey


class StackLockTable:
    """
    Entries are reference counted: holders and waiters keep a stack's lock
    alive, and the entry is dropped once the last of them leaves.
    """

    def __init__(self):
        # key -> [lock, holders + waiters]
        self._locks: Dict[StackKey, List] = {}
        self._guard = Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: StackKey) -> Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: StackKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def is_locked(self, key: StackKey) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()

    @contextmanager
    def hold(self, key: StackKey, timeout: float = -1) -> Iterator[None]:
        """
        Hold the stack's lock. timeout=-1 blocks forever, 0 fails fast;
        Conflict is raised when the lock is not acquired in time.
        """
        lock = self._checkout(key)
        try:
            if timeout == 0:
                acquired = lock.acquire(blocking=False)
            else:
                acquired = lock.acquire(timeout=timeout)
            if not acquired:
                raise Conflict(f"Stack {key} is busy")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)
