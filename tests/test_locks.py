"""
Tests for the per-user lock registry.
"""
import threading
import time

import pytest

from firstclub.utils.exceptions import BusyError
from firstclub.utils.locks import UserLockRegistry


class TestUserLockRegistry:
    """Bounded per-user mutual exclusion."""

    def test_hold_and_release(self):
        registry = UserLockRegistry(timeout=0.1)

        with registry.hold('user-1'):
            assert registry.active_count() == 1

        assert registry.active_count() == 0

    def test_second_holder_times_out_with_busy(self):
        registry = UserLockRegistry(timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold('user-1'):
                acquired.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(2)
        try:
            started = time.monotonic()
            with pytest.raises(BusyError) as exc:
                with registry.hold('user-1'):
                    pass
            assert time.monotonic() - started < 1
            assert exc.value.retryable is True
            assert exc.value.code == 'BUSY'
        finally:
            release.set()
            thread.join(2)

        assert registry.active_count() == 0

    def test_different_users_do_not_block(self):
        registry = UserLockRegistry(timeout=0.05)

        with registry.hold('user-1'):
            with registry.hold('user-2'):
                assert registry.active_count() == 2

    def test_lock_released_on_exception(self):
        registry = UserLockRegistry(timeout=0.05)

        with pytest.raises(ValueError):
            with registry.hold('user-1'):
                raise ValueError('boom')

        with registry.hold('user-1'):
            pass
        assert registry.active_count() == 0

    def test_waiters_are_serialised(self):
        registry = UserLockRegistry(timeout=2)
        inside = []
        overlaps = []

        def worker():
            with registry.hold('user-1'):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert overlaps == []
        assert registry.active_count() == 0
