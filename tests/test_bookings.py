"""
Unit tests for the facility booking service
Tests: booking flow, approval, check-in/out, cancellation penalty, modification, recurring bookings
"""

import threading
import pytest
from datetime import datetime, time, timedelta

from engine.errors import (
    BookingConflictError,
    CheckInClosed,
    LimitExceeded,
    LockTimeout,
    NotFoundError,
    ValidationError,
)
from engine.locks import member_key
from engine.notifications import SchedulingEventType
from engine.schemas import (
    BookingRequest,
    BookingStatus,
    MemberBookingLimit,
    RecurrencePattern,
    RecurrenceType,
    RecurrenceUpdateType,
    RecurringBookingChange,
    RecurringBookingRequest,
    Weekday,
)

from conftest import TENANT


def _request(facility, member, start, hours=1, **extra):
    return BookingRequest(
        facility_id=facility.id,
        member_id=member.id,
        start_datetime=start,
        end_datetime=start + timedelta(hours=hours),
        **extra,
    )


def _recurring(facility, member, start, pattern, hours=1):
    return RecurringBookingRequest(
        facility_id=facility.id,
        member_id=member.id,
        start_datetime=start,
        end_datetime=start + timedelta(hours=hours),
        pattern=pattern,
    )


def _wednesdays(count):
    return RecurrencePattern(type=RecurrenceType.weekly, days_of_week=[Weekday.wednesday], max_occurrences=count)


class TestBook:
    """예약 생성"""

    def test_book_and_adjacent(self, booking_service, facility, member, now):
        first = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        assert first.status == BookingStatus.confirmed
        assert first.version == 1

        second = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 11)), now)
        assert second.start_datetime == first.end_datetime

    def test_overlap_rejected(self, booking_service, store, facility, member, now):
        other = store.save_member(member.model_copy(update={"id": "member-2", "name": "이서연"}))
        booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)

        with pytest.raises(BookingConflictError) as exc_info:
            booking_service.book(TENANT, _request(facility, other, datetime(2024, 1, 2, 10, 30)), now)
        assert exc_info.value.conflicts

    def test_limit_violations_reported(self, booking_service, store, facility, member, now):
        store.save_limit(MemberBookingLimit(tenant_id=TENANT, member_id=member.id, max_bookings_per_day=1))
        booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)

        with pytest.raises(LimitExceeded) as exc_info:
            booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 14)), now)
        assert "MaxBookingsPerDay exceeded" in exc_info.value.violations
        assert exc_info.value.details["remaining_bookings_today"] == 0

    def test_concurrent_requests_single_winner(self, booking_service, store, facility, member, now):
        """같은 시간대 동시 요청은 하나만 성공"""
        members = [store.save_member(member.model_copy(update={"id": f"m{i}"})) for i in range(5)]
        outcomes = []

        def attempt(m):
            try:
                booking_service.book(TENANT, _request(facility, m, datetime(2024, 1, 2, 15)), now)
                outcomes.append("ok")
            except BookingConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt, args=(m,)) for m in members]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 4

    def test_approval_flow(self, booking_service, store, facility, member, publisher, now):
        store.save_limit(MemberBookingLimit(tenant_id=TENANT, member_id=member.id, requires_approval=True))
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        assert booking.status == BookingStatus.pending

        approved = booking_service.approve_booking(TENANT, booking.id, now)
        assert approved.status == BookingStatus.confirmed
        with pytest.raises(ValidationError):
            booking_service.approve_booking(TENANT, booking.id, now)

        kinds = [e.event_type for e in publisher.get_recent_events(tenant_id=TENANT)]
        assert SchedulingEventType.BOOKING_CREATED in kinds


class TestLifecycle:
    """체크인 / 체크아웃 / 노쇼"""

    def test_check_in_window(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)

        with pytest.raises(CheckInClosed):
            booking_service.check_in_booking(TENANT, booking.id, datetime(2024, 1, 2, 9, 44))

        checked_in = booking_service.check_in_booking(TENANT, booking.id, datetime(2024, 1, 2, 9, 45))
        assert checked_in.status == BookingStatus.checked_in

        checked_out = booking_service.check_out_booking(TENANT, booking.id, datetime(2024, 1, 2, 10, 55))
        assert checked_out.status == BookingStatus.checked_out
        assert checked_out.checked_out_at == datetime(2024, 1, 2, 10, 55)

    def test_check_in_after_end(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        with pytest.raises(CheckInClosed):
            booking_service.check_in_booking(TENANT, booking.id, datetime(2024, 1, 2, 11))

    def test_no_show(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        with pytest.raises(ValidationError):
            booking_service.mark_booking_no_show(TENANT, booking.id, datetime(2024, 1, 2, 9))
        marked = booking_service.mark_booking_no_show(TENANT, booking.id, datetime(2024, 1, 2, 10, 20))
        assert marked.status == BookingStatus.no_show


class TestCancellation:
    """취소 위약금"""

    def test_late_cancellation_penalty(self, booking_service, facility, member, now):
        """premium 기본 정책은 12시간 이내 취소 시 비용의 50%"""
        booking = booking_service.book(
            TENANT, _request(facility, member, datetime(2024, 1, 2, 10), cost=40.0), now
        )
        result = booking_service.cancel_booking(TENANT, booking.id, datetime(2024, 1, 2, 1), reason="아파서")

        assert result.penalty_applied
        assert result.penalty_amount == 20.0
        assert result.refund_amount == 20.0
        assert result.hours_before_start == 9.0

    def test_early_cancellation_refunds_all(self, booking_service, store, facility, member, publisher, now):
        booking = booking_service.book(
            TENANT, _request(facility, member, datetime(2024, 1, 2, 10), cost=40.0), now
        )
        result = booking_service.cancel_booking(TENANT, booking.id, now)

        assert not result.penalty_applied
        assert result.refund_amount == 40.0
        saved = store.get_booking(TENANT, booking.id)
        assert saved.status == BookingStatus.cancelled
        assert saved.cancellation_reason == "Cancelled by member"
        assert any(e.event_type == SchedulingEventType.BOOKING_CANCELLED for e in publisher.get_recent_events())

    def test_cancelled_slot_can_be_rebooked(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        booking_service.cancel_booking(TENANT, booking.id, now)
        rebooked = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        assert rebooked.status == BookingStatus.confirmed

    def test_cannot_cancel_twice(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        booking_service.cancel_booking(TENANT, booking.id, now)
        with pytest.raises(ValidationError):
            booking_service.cancel_booking(TENANT, booking.id, now)


class TestModify:
    """예약 변경"""

    def test_modify_moves_booking_and_appends_note(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        modified = booking_service.modify_booking(
            TENANT, booking.id, now,
            new_start=datetime(2024, 1, 2, 10, 30), new_end=datetime(2024, 1, 2, 11, 30),
            reason="시간 조정",
        )
        assert modified.start_datetime == datetime(2024, 1, 2, 10, 30)
        assert modified.notes == "[MODIFIED 2024-01-01 08:00]: 시간 조정"
        assert modified.version == booking.version + 1

    def test_modify_cutoff(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        with pytest.raises(ValidationError):
            booking_service.modify_booking(
                TENANT, booking.id, datetime(2024, 1, 2, 8, 30), new_start=datetime(2024, 1, 2, 12),
                new_end=datetime(2024, 1, 2, 13),
            )

    def test_modify_into_conflict(self, booking_service, store, facility, member, now):
        other = store.save_member(member.model_copy(update={"id": "member-2"}))
        booking_service.book(TENANT, _request(facility, other, datetime(2024, 1, 2, 14)), now)
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)

        with pytest.raises(BookingConflictError):
            booking_service.modify_booking(
                TENANT, booking.id, now,
                new_start=datetime(2024, 1, 2, 13, 30), new_end=datetime(2024, 1, 2, 14, 30),
            )

    def test_only_confirmed_can_be_modified(self, booking_service, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        booking_service.cancel_booking(TENANT, booking.id, now)
        with pytest.raises(ValidationError):
            booking_service.modify_booking(TENANT, booking.id, now, purpose="연습")

    def test_modify_waits_for_member_lock(self, booking_service, locks, facility, member, now):
        booking = booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now)
        with locks.hold(member_key(TENANT, member.id)):
            with pytest.raises(LockTimeout):
                booking_service.modify_booking(TENANT, booking.id, now, purpose="연습", timeout=0.05)


class TestMemberLock:
    """회원 단위 잠금"""

    def test_book_waits_for_member_lock(self, booking_service, store, locks, facility, member, now):
        """다른 시설 예약이 같은 회원의 한도를 검사하는 동안에는 대기"""
        with locks.hold(member_key(TENANT, member.id)):
            with pytest.raises(LockTimeout):
                booking_service.book(
                    TENANT, _request(facility, member, datetime(2024, 1, 2, 10)), now, timeout=0.05
                )
        assert store.list_member_bookings(TENANT, member.id, datetime(2024, 1, 1), datetime(2024, 2, 1)) == []

    def test_concurrent_requests_respect_daily_limit(self, booking_service, store, facility, member, now):
        """서로 다른 시설에 동시에 예약해도 회원 일일 한도는 지켜진다"""
        store.save_limit(MemberBookingLimit(tenant_id=TENANT, member_id=member.id, max_bookings_per_day=1))
        courts = [facility] + [
            store.save_facility(facility.model_copy(update={"id": f"court-{i}", "name": f"Court {i}"}))
            for i in range(2, 5)
        ]
        outcomes = []

        def attempt(court, hour):
            try:
                booking_service.book(TENANT, _request(court, member, datetime(2024, 1, 2, hour)), now)
                outcomes.append("ok")
            except LimitExceeded:
                outcomes.append("limit")

        threads = [threading.Thread(target=attempt, args=(c, 10 + i)) for i, c in enumerate(courts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("limit") == 3


class TestRecurringBookings:
    """반복 예약"""

    def test_partial_success_reports_failed_slots(self, booking_service, store, facility, member, now):
        """5회 중 1/31은 30일 사전 예약 범위 밖"""
        result = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(5)), now
        )

        assert result.success
        assert result.bookings_created == 4
        assert result.bookings_failed == 1
        assert result.message == "Successfully created 4 recurring bookings"
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Slot 2024-01-31 10:00 unavailable:")

        saved = store.list_recurring_bookings(TENANT, member.id, result.recurrence_group_id)
        assert [b.start_datetime.day for b in saved] == [3, 10, 17, 24]
        assert all(b.is_recurring and b.recurrence_group_id == result.recurrence_group_id for b in saved)

    def test_conflicting_slot_is_skipped(self, booking_service, store, facility, member, now):
        other = store.save_member(member.model_copy(update={"id": "member-2", "name": "이서연"}))
        booking_service.book(TENANT, _request(facility, other, datetime(2024, 1, 10, 10)), now)

        result = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(3)), now
        )

        assert (result.bookings_created, result.bookings_failed) == (2, 1)
        assert [b.start_datetime.day for b in result.bookings] == [3, 17]
        assert result.errors[0].startswith("Slot 2024-01-10 10:00 unavailable:")

    def test_policy_disallows_recurring(self, booking_service, store, facility, member, now):
        store.save_limit(MemberBookingLimit(tenant_id=TENANT, member_id=member.id, allow_recurring_bookings=False))

        with pytest.raises(LimitExceeded) as exc_info:
            booking_service.book_recurring(
                TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(3)), now
            )
        assert exc_info.value.violations == ["Recurring bookings are not allowed"]
        assert store.list_recurring_bookings(TENANT, member.id) == []

        # 단건 예약은 그대로 허용
        assert booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 3, 10)), now)

    def test_open_ended_pattern_is_capped(self, booking_service, booking_settings, facility, member, now):
        booking_settings.max_recurring_bookings = 3
        daily = RecurrencePattern(type=RecurrenceType.daily)

        result = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 2, 10), daily), now
        )

        assert result.bookings_created == 3
        assert [b.start_datetime.day for b in result.bookings] == [2, 3, 4]

    def test_nothing_created(self, booking_service, facility, member, now):
        """운영 시간 밖이면 모든 회차 실패"""
        result = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 23), _wednesdays(2)), now
        )

        assert not result.success
        assert result.recurrence_group_id is None
        assert result.message == "No bookings could be created"
        assert result.bookings_failed == 2

    def test_modify_this_and_future(self, booking_service, store, facility, member, now):
        created = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(4)), now
        )
        change = RecurringBookingChange(
            update_type=RecurrenceUpdateType.this_and_future, new_start_time=time(14, 0), reason="코치 일정",
        )

        result = booking_service.modify_recurring(
            TENANT, member.id, created.recurrence_group_id, change, datetime(2024, 1, 12, 8)
        )

        assert result.success
        assert result.bookings_modified == 2
        assert result.message == "Modified 2 recurring bookings"
        saved = store.list_recurring_bookings(TENANT, member.id, created.recurrence_group_id)
        assert [(b.start_datetime.day, b.start_datetime.hour, b.end_datetime.hour) for b in saved] == [
            (3, 10, 11), (10, 10, 11), (17, 14, 15), (24, 14, 15),
        ]
        assert saved[2].notes == "[MODIFIED 2024-01-12 08:00]: 코치 일정"

    def test_modify_all_skips_settled_and_reports_cutoff(self, booking_service, facility, member, now):
        created = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(3)), now
        )
        first, second, third = created.bookings
        booking_service.cancel_booking(TENANT, second.id, now)
        change = RecurringBookingChange(
            update_type=RecurrenceUpdateType.all_occurrences,
            new_start_time=time(15, 0), new_end_time=time(16, 30),
        )

        result = booking_service.modify_recurring(
            TENANT, member.id, created.recurrence_group_id, change, datetime(2024, 1, 3, 9)
        )

        assert result.bookings_modified == 1
        assert result.bookings_failed == 1
        assert result.errors[0].startswith("Failed to modify booking on 2024-01-03 10:00")
        assert result.bookings[0].id == third.id
        assert result.bookings[0].end_datetime == datetime(2024, 1, 17, 16, 30)

    def test_modify_this_occurrence(self, booking_service, facility, member, now):
        created = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(3)), now
        )
        target = created.bookings[1]
        change = RecurringBookingChange(
            update_type=RecurrenceUpdateType.this_occurrence, booking_id=target.id, purpose="레슨",
        )

        result = booking_service.modify_recurring(TENANT, member.id, created.recurrence_group_id, change, now)

        assert [b.id for b in result.bookings] == [target.id]
        assert result.bookings[0].purpose == "레슨"
        assert result.bookings[0].start_datetime == target.start_datetime

        with pytest.raises(NotFoundError):
            booking_service.modify_recurring(TENANT, member.id, "unknown-group", change, now)
        with pytest.raises(ValueError):
            RecurringBookingChange(update_type=RecurrenceUpdateType.this_occurrence)

    def test_member_summaries(self, booking_service, facility, member, now):
        created = booking_service.book_recurring(
            TENANT, _recurring(facility, member, datetime(2024, 1, 3, 10), _wednesdays(3)), now
        )
        booking_service.book(TENANT, _request(facility, member, datetime(2024, 1, 5, 10)), now)
        booking_service.cancel_booking(TENANT, created.bookings[2].id, now)

        summaries = booking_service.get_member_recurring_bookings(TENANT, member.id, now)

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.recurrence_group_id == created.recurrence_group_id
        assert summary.facility_id == facility.id
        assert summary.first_booking == datetime(2024, 1, 3, 10)
        assert summary.last_booking == datetime(2024, 1, 17, 10)
        assert (summary.total_occurrences, summary.upcoming_occurrences) == (3, 2)
        assert summary.is_active

        later = booking_service.get_member_recurring_bookings(TENANT, member.id, datetime(2024, 1, 20))
        assert later[0].upcoming_occurrences == 0
        assert not later[0].is_active
