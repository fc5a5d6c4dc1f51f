"""
Unit tests for keyed resource locks
Tests: timeout, single-flight, entry release after last holder
"""

import threading
import pytest

from engine.errors import LockTimeout
from engine.locks import KeyedLockRegistry, event_key, series_key

from conftest import TENANT


class TestKeyedLocks:
    """키별 잠금"""

    def test_hold_times_out(self):
        locks = KeyedLockRegistry()
        key = event_key(TENANT, "e1")
        with locks.hold(key):
            assert locks.is_held(key)
            with pytest.raises(LockTimeout):
                with locks.hold(key, timeout=0.05):
                    pass
        assert not locks.is_held(key)

    def test_try_hold_is_single_flight(self):
        locks = KeyedLockRegistry()
        key = series_key(TENANT, "m1")
        with locks.try_hold(key) as first:
            with locks.try_hold(key) as second:
                assert first is True
                assert second is False
        with locks.try_hold(key) as again:
            assert again is True

    def test_released_keys_are_dropped(self):
        """해제된 키는 레지스트리에 남지 않는다"""
        locks = KeyedLockRegistry()
        for i in range(1000):
            with locks.hold(event_key(TENANT, f"e{i}"), timeout=1):
                pass
            with locks.try_hold(series_key(TENANT, f"m{i}")):
                pass
        assert len(locks) == 0

    def test_timed_out_waiter_is_dropped(self):
        locks = KeyedLockRegistry()
        key = event_key(TENANT, "e1")
        with locks.hold(key):
            with pytest.raises(LockTimeout):
                with locks.hold(key, timeout=0.01):
                    pass
            assert len(locks) == 1
        assert len(locks) == 0

    def test_waiter_gets_same_lock(self):
        """대기 중인 스레드가 있으면 항목을 유지하고, 해제 후 그 스레드가 획득한다"""
        locks = KeyedLockRegistry()
        key = event_key(TENANT, "e1")
        waiting = threading.Event()
        entered = []

        def worker():
            waiting.set()
            with locks.hold(key, timeout=5):
                entered.append(True)

        with locks.hold(key):
            thread = threading.Thread(target=worker)
            thread.start()
            waiting.wait(timeout=5)
            assert entered == []
        thread.join(timeout=5)

        assert entered == [True]
        assert len(locks) == 0
