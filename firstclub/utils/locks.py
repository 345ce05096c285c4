"""
Per-user mutual exclusion.

Every read-modify-write of a user's subscription runs inside
``UserLockRegistry.hold(user_id)``. Locks are created on demand and dropped
once no thread holds or waits for them, so the registry does not grow with
the user base. Acquisition is bounded: a caller that cannot get the lock
within the timeout gets a ``BusyError`` instead of blocking.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .exceptions import BusyError

logger = logging.getLogger(__name__)


class _LockEntry:
    __slots__ = ('lock', 'refs')

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class UserLockRegistry:
    """Registry of per-user locks with timeout-bounded acquisition."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._entries: Dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    def _checkout(self, user_id: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(user_id)
            if entry is None:
                entry = _LockEntry()
                self._entries[user_id] = entry
            entry.refs += 1
            return entry

    def _checkin(self, user_id: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(user_id) is entry:
                del self._entries[user_id]

    @contextmanager
    def hold(self, user_id: str, timeout: Optional[float] = None):
        """
        Hold the lock for ``user_id`` for the duration of the block.

        Raises:
            BusyError: if the lock is not acquired within ``timeout`` seconds
        """
        wait = self.timeout if timeout is None else timeout
        entry = self._checkout(user_id)
        try:
            if not entry.lock.acquire(timeout=wait):
                logger.warning(f'Lock timeout for user {user_id} after {wait}s')
                raise BusyError(user_id, wait)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(user_id, entry)

    def active_count(self) -> int:
        """Number of users with a lock currently held or awaited."""
        with self._guard:
            return len(self._entries)

