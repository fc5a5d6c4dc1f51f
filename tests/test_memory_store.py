"""
Unit tests for the in-memory store
Tests: tenant isolation, copy semantics, optimistic versioning, nested transaction rollback
"""

import threading
import pytest
from datetime import datetime

from engine.errors import ConcurrencyConflict, LockTimeout, NotFoundError
from engine.schemas import Event

from conftest import OTHER_TENANT, TENANT


def _event(title="Sabre Drills", tenant_id=TENANT):
    return Event(
        tenant_id=tenant_id,
        title=title,
        start_datetime=datetime(2024, 1, 5, 18),
        end_datetime=datetime(2024, 1, 5, 19),
    )


class TestIsolation:
    """테넌트 격리 / 복사본"""

    def test_other_tenant_cannot_read(self, store):
        event = store.create_event(TENANT, _event())
        assert store.get_event(OTHER_TENANT, event.id) is None
        assert store.list_events(OTHER_TENANT) == []

    def test_tenant_mismatch_on_write(self, store):
        with pytest.raises(NotFoundError):
            store.create_event(OTHER_TENANT, _event())

    def test_returned_objects_are_copies(self, store):
        event = store.create_event(TENANT, _event())
        event.title = "Changed locally"
        assert store.get_event(TENANT, event.id).title == "Sabre Drills"


class TestVersioning:
    """낙관적 버전 관리"""

    def test_version_bumps_on_update(self, store):
        event = store.create_event(TENANT, _event())
        assert event.version == 1
        updated = store.update_event(TENANT, event, expected_version=1)
        assert updated.version == 2

    def test_stale_version_rejected(self, store):
        event = store.create_event(TENANT, _event())
        store.update_event(TENANT, event, expected_version=1)
        with pytest.raises(ConcurrencyConflict):
            store.update_event(TENANT, event, expected_version=1)

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_event(TENANT, _event())


class TestTransactions:
    """트랜잭션 롤백"""

    def test_failed_block_is_rolled_back(self, store):
        kept = store.create_event(TENANT, _event("Kept"))
        with pytest.raises(RuntimeError):
            with store.transaction(TENANT):
                store.create_event(TENANT, _event("Discarded"))
                kept.title = "Renamed"
                store.update_event(TENANT, kept)
                store.delete_event(TENANT, kept.id)
                raise RuntimeError("boom")

        assert [e.title for e in store.list_events(TENANT)] == ["Kept"]
        assert store.get_event(TENANT, kept.id).version == 1

    def test_inner_failure_keeps_outer_writes(self, store):
        with store.transaction(TENANT):
            outer = store.create_event(TENANT, _event("Outer"))
            try:
                with store.transaction(TENANT):
                    store.create_event(TENANT, _event("Inner"))
                    raise ValueError("inner")
            except ValueError:
                pass

        assert [e.id for e in store.list_events(TENANT)] == [outer.id]

    def test_outer_failure_undoes_committed_inner(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction(TENANT):
                with store.transaction(TENANT):
                    store.create_event(TENANT, _event("Inner"))
                raise RuntimeError("outer")

        assert store.list_events(TENANT) == []

    def test_lock_timeout(self, store):
        held = threading.Event()
        release = threading.Event()

        def hold_store():
            with store._guard(None):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold_store)
        worker.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeout):
                store.get_event(TENANT, "any", timeout=0.05)
        finally:
            release.set()
            worker.join()
