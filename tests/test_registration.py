"""
Unit tests for the registration ledger
Tests: capacity, waitlist ordering and promotion, check-in window, no-shows, bulk operations
"""

import threading
import pytest
from datetime import datetime, timedelta

from engine.errors import (
    AlreadyRegistered,
    CheckInClosed,
    EventFull,
    RegistrationClosed,
    ValidationError,
)
from engine.notifications import SchedulingEventType
from engine.schemas import EventStatus, RegistrationStatus

from conftest import TENANT


def _statuses(store, event_id):
    return {r.member_id: r for r in store.list_registrations(TENANT, event_id)}


class TestRegistrationCapacity:
    """정원과 대기자"""

    def test_waitlist_promotion_on_cancel(self, ledger, store, make_event, now):
        """정원 2: M1, M2 확정 / M3, M4 대기 -> M1 취소 시 M3 승격, M4 대기 1번"""
        event = make_event()
        regs = {m: ledger.register(TENANT, event.id, m, now) for m in ("M1", "M2", "M3", "M4")}

        assert regs["M1"].status == RegistrationStatus.confirmed
        assert regs["M2"].status == RegistrationStatus.confirmed
        assert regs["M3"].status == RegistrationStatus.waitlisted
        assert regs["M3"].waitlist_position == 1
        assert regs["M4"].waitlist_position == 2

        result = ledger.cancel(TENANT, regs["M1"].id, now)

        by_member = _statuses(store, event.id)
        assert by_member["M1"].status == RegistrationStatus.cancelled
        assert by_member["M2"].status == RegistrationStatus.confirmed
        assert by_member["M3"].status == RegistrationStatus.confirmed
        assert by_member["M3"].waitlist_position is None
        assert by_member["M4"].status == RegistrationStatus.waitlisted
        assert by_member["M4"].waitlist_position == 1
        assert result.promoted_registration_ids == [regs["M3"].id]
        assert store.get_event(TENANT, event.id).current_enrollment == 2

    def test_cancel_waitlisted_renumbers(self, ledger, store, make_event, now):
        event = make_event(max_capacity=1)
        regs = [ledger.register(TENANT, event.id, f"M{i}", now) for i in range(1, 5)]

        ledger.cancel(TENANT, regs[2].id, now)   # 대기 2번 취소

        waitlist = ledger.get_waitlist(TENANT, event.id)
        assert [r.member_id for r in waitlist] == ["M2", "M4"]
        assert [r.waitlist_position for r in waitlist] == [1, 2]
        assert store.get_event(TENANT, event.id).current_enrollment == 1

    def test_rescheduled_event_promotes_waitlist(self, ledger, store, make_event, now):
        """일정이 변경된 이벤트도 등록을 받고, 취소 시 대기자를 승격한다"""
        event = make_event(max_capacity=1, status=EventStatus.rescheduled)
        first = ledger.register(TENANT, event.id, "M1", now)
        second = ledger.register(TENANT, event.id, "M2", now)
        assert second.status == RegistrationStatus.waitlisted

        result = ledger.cancel(TENANT, first.id, now)

        assert result.promoted_registration_ids == [second.id]
        assert _statuses(store, event.id)["M2"].status == RegistrationStatus.confirmed
        assert ledger.get_waitlist(TENANT, event.id) == []
        assert store.get_event(TENANT, event.id).current_enrollment == 1

    def test_rescheduled_occurrence_promotes_waitlist(self, ledger, manager, store, make_event, facility, now):
        """개별 일정 변경된 회차에서 확정자 취소 -> 대기자 승격"""
        event = make_event(
            title="Epee Drills", facility_id=facility.id, max_capacity=1,
            start_datetime=datetime(2024, 1, 10, 18), end_datetime=datetime(2024, 1, 10, 19),
            master_event_id="series-1", occurrence_number=2,
        )
        first = ledger.register(TENANT, event.id, "M1", now)
        second = ledger.register(TENANT, event.id, "M2", now)

        moved = manager.reschedule_occurrence(
            TENANT, event.id, datetime(2024, 1, 11, 18), datetime(2024, 1, 11, 19), now
        )
        assert moved.status == EventStatus.rescheduled
        ledger.cancel(TENANT, first.id, now)

        assert _statuses(store, event.id)["M2"].status == RegistrationStatus.confirmed
        assert store.get_event(TENANT, event.id).current_enrollment == 1
        assert second.id not in [r.id for r in ledger.get_waitlist(TENANT, event.id)]

    def test_completed_event_does_not_promote(self, ledger, store, make_event, now):
        event = make_event(max_capacity=1)
        first = ledger.register(TENANT, event.id, "M1", now)
        ledger.register(TENANT, event.id, "M2", now)
        completed = store.get_event(TENANT, event.id)
        completed.status = EventStatus.completed
        store.update_event(TENANT, completed, expected_version=completed.version)

        result = ledger.cancel(TENANT, first.id, now)

        assert result.promoted_registration_ids == []
        assert _statuses(store, event.id)["M2"].status == RegistrationStatus.waitlisted

    def test_full_without_waitlist(self, ledger, make_event, now):
        event = make_event(max_capacity=1, allow_waitlist=False)
        ledger.register(TENANT, event.id, "M1", now)
        with pytest.raises(EventFull):
            ledger.register(TENANT, event.id, "M2", now)

    def test_duplicate_registration(self, ledger, make_event, now):
        event = make_event()
        ledger.register(TENANT, event.id, "M1", now)
        with pytest.raises(AlreadyRegistered):
            ledger.register(TENANT, event.id, "M1", now)

    def test_reregister_after_cancel(self, ledger, make_event, now):
        event = make_event()
        first = ledger.register(TENANT, event.id, "M1", now)
        ledger.cancel(TENANT, first.id, now)
        again = ledger.register(TENANT, event.id, "M1", now)
        assert again.status == RegistrationStatus.confirmed

    def test_registration_deadline(self, ledger, make_event, now):
        event = make_event(registration_deadline=now - timedelta(hours=1))
        with pytest.raises(RegistrationClosed):
            ledger.register(TENANT, event.id, "M1", now)

    def test_cancelled_event_rejects_registration(self, ledger, make_event, now):
        event = make_event(status=EventStatus.cancelled)
        with pytest.raises(RegistrationClosed):
            ledger.register(TENANT, event.id, "M1", now)

    def test_cancellation_deadline(self, ledger, make_event, now):
        event = make_event(cancellation_deadline=now + timedelta(hours=1))
        registration = ledger.register(TENANT, event.id, "M1", now)
        with pytest.raises(RegistrationClosed):
            ledger.cancel(TENANT, registration.id, now + timedelta(hours=2))
        # 관리자 취소는 마감 무시
        result = ledger.cancel(TENANT, registration.id, now + timedelta(hours=2), enforce_deadline=False)
        assert result.previous_status == RegistrationStatus.confirmed

    def test_cancel_twice_is_rejected(self, ledger, make_event, now):
        event = make_event()
        registration = ledger.register(TENANT, event.id, "M1", now)
        ledger.cancel(TENANT, registration.id, now)
        with pytest.raises(ValidationError):
            ledger.cancel(TENANT, registration.id, now)

    def test_concurrent_registrations_respect_capacity(self, ledger, store, make_event, now):
        """동시 등록에서도 확정 인원은 정원을 넘지 않고 대기 순번은 연속"""
        event = make_event(max_capacity=3)
        errors = []

        def register(member_id):
            try:
                ledger.register(TENANT, event.id, member_id, now)
            except Exception as e:  # pragma: no cover - 실패 시 원인 표시용
                errors.append(e)

        threads = [threading.Thread(target=register, args=(f"M{i}",)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        registrations = store.list_registrations(TENANT, event.id)
        confirmed = [r for r in registrations if r.status == RegistrationStatus.confirmed]
        waitlisted = sorted(r.waitlist_position for r in registrations if r.status == RegistrationStatus.waitlisted)
        assert len(confirmed) == 3
        assert waitlisted == list(range(1, 8))
        assert store.get_event(TENANT, event.id).current_enrollment == 3

    def test_notifications_published(self, ledger, publisher, make_event, now):
        event = make_event(max_capacity=1)
        first = ledger.register(TENANT, event.id, "M1", now)
        ledger.register(TENANT, event.id, "M2", now)
        ledger.cancel(TENANT, first.id, now)

        kinds = [e.event_type for e in publisher.get_recent_events(tenant_id=TENANT)]
        assert SchedulingEventType.REGISTRATION_CONFIRMED in kinds
        assert SchedulingEventType.REGISTRATION_WAITLISTED in kinds
        assert SchedulingEventType.REGISTRATION_PROMOTED in kinds


class TestCheckIn:
    """체크인"""

    def test_check_in_window(self, ledger, make_event, now):
        event = make_event()
        registration = ledger.register(TENANT, event.id, "M1", now)

        with pytest.raises(CheckInClosed):
            ledger.check_in(TENANT, registration.id, event.start_datetime - timedelta(minutes=61))
        with pytest.raises(CheckInClosed):
            ledger.check_in(TENANT, registration.id, event.start_datetime + timedelta(minutes=31))

        checked = ledger.check_in(TENANT, registration.id, event.start_datetime - timedelta(minutes=60))
        assert checked.checked_in_at == event.start_datetime - timedelta(minutes=60)

    def test_waitlisted_cannot_check_in(self, ledger, make_event, now):
        event = make_event(max_capacity=0)
        registration = ledger.register(TENANT, event.id, "M1", now)
        with pytest.raises(ValidationError):
            ledger.check_in(TENANT, registration.id, event.start_datetime)

    def test_double_check_in_and_undo(self, ledger, make_event, now):
        event = make_event()
        registration = ledger.register(TENANT, event.id, "M1", now)
        ledger.check_in(TENANT, registration.id, event.start_datetime)
        with pytest.raises(ValidationError):
            ledger.check_in(TENANT, registration.id, event.start_datetime)

        undone = ledger.undo_check_in(TENANT, registration.id)
        assert undone.checked_in_at is None

    def test_bulk_check_in_classifies(self, ledger, make_event, now):
        event = make_event(max_capacity=3)
        for m in ("M1", "M2", "M3"):
            ledger.register(TENANT, event.id, m, now)
        ledger.bulk_check_in(TENANT, event.id, ["M1"], event.start_datetime)

        result = ledger.bulk_check_in(TENANT, event.id, ["M1", "M2", "M3", "M9"], event.start_datetime)
        assert result.total_requested == 4
        assert result.successful_check_ins == 2
        assert result.already_checked_in == 1
        assert result.not_found == 1
        assert sorted(result.checked_in_member_ids) == ["M2", "M3"]

    def test_mark_no_shows_after_window(self, ledger, store, make_event, now):
        event = make_event()
        first = ledger.register(TENANT, event.id, "M1", now)
        ledger.register(TENANT, event.id, "M2", now)
        ledger.check_in(TENANT, first.id, event.start_datetime)

        assert ledger.mark_no_shows(TENANT, event.id, event.start_datetime) == []

        marked = ledger.mark_no_shows(TENANT, event.id, event.start_datetime + timedelta(minutes=31))
        assert len(marked) == 1
        by_member = _statuses(store, event.id)
        assert by_member["M2"].status == RegistrationStatus.no_show
        assert by_member["M2"].no_show is True
        assert store.get_event(TENANT, event.id).current_enrollment == 1


class TestBulkRegistration:
    def test_bulk_register_reports_each_item(self, ledger, make_event, now):
        open_event = make_event(max_capacity=5)
        closed_event = make_event(status=EventStatus.cancelled)

        result = ledger.bulk_register(TENANT, [open_event.id, closed_event.id], ["M1", "M2"], now)

        assert result.successful == 2
        assert result.failed == 2
        failures = [item for item in result.items if not item.success]
        assert all(item.event_id == closed_event.id for item in failures)
        assert all(item.error for item in failures)

    def test_member_registrations(self, ledger, make_event, now):
        first = make_event()
        second = make_event(title="Sabre Open")
        cancelled = ledger.register(TENANT, first.id, "M1", now)
        ledger.register(TENANT, second.id, "M1", now)
        ledger.register(TENANT, second.id, "M2", now)
        ledger.cancel(TENANT, cancelled.id, now)

        active = ledger.get_member_registrations(TENANT, "M1")
        assert [r.event_id for r in active] == [second.id]
        assert len(ledger.get_member_registrations(TENANT, "M1", include_cancelled=True)) == 2

    def test_other_tenant_cannot_see_event(self, ledger, make_event, now):
        from engine.errors import NotFoundError
        from conftest import OTHER_TENANT

        event = make_event()
        with pytest.raises(NotFoundError):
            ledger.register(OTHER_TENANT, event.id, "M1", now)
