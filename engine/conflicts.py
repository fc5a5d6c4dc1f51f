"""
시설 예약 충돌 검사

- 겹침 판정은 열린 구간: existing.start < end AND existing.end > start
- 겹침 대상은 confirmed / checked_in 예약과 scheduled / in_progress 이벤트
- 운영 요일/시간, 예약 길이, 사전 예약 가능 기간 검사
- 빈 시간 탐색 (다음 가능 시간, 같은 날 대안 시간, 예약 가능 시작 시각 목록)
"""

from datetime import date, datetime, time, timedelta
from typing import List, Optional

from loguru import logger

from .config import BookingSettings, get_booking_settings
from .errors import NotFoundError, ValidationError
from .schemas import (
    ACTIVE_BOOKING_STATUSES,
    ACTIVE_EVENT_STATUSES,
    BookingConflict,
    ConflictCheckResult,
    ConflictKind,
    Event,
    Facility,
    FacilityBooking,
    FacilityStatus,
    TimeSlot,
    Weekday,
    overlaps,
)
from .stores import EventStore, FacilityStore


def operating_hours_conflicts(facility: Facility, start: datetime, end: datetime) -> List[BookingConflict]:
    """예약 구간이 걸치는 모든 날짜에 대해 운영 요일/시간 검사"""
    conflicts: List[BookingConflict] = []
    day = start.date()
    while datetime.combine(day, time.min, tzinfo=start.tzinfo) < end:
        day_begin = datetime.combine(day, time.min, tzinfo=start.tzinfo)
        next_day = day_begin + timedelta(days=1)
        segment_start = max(start, day_begin)
        segment_end = min(end, next_day)

        if facility.operating_days and Weekday.of(day) not in facility.operating_days:
            conflicts.append(BookingConflict(
                kind=ConflictKind.closed_day,
                message=f"Facility is closed on {Weekday.of(day).name.capitalize()}",
                start_datetime=segment_start,
                end_datetime=segment_end,
            ))
        else:
            opens = day_begin.replace(
                hour=facility.operating_hours_start.hour,
                minute=facility.operating_hours_start.minute,
                second=facility.operating_hours_start.second,
            ) if facility.operating_hours_start else day_begin
            closes = day_begin.replace(
                hour=facility.operating_hours_end.hour,
                minute=facility.operating_hours_end.minute,
                second=facility.operating_hours_end.second,
            ) if facility.operating_hours_end else next_day
            if segment_start < opens or segment_end > closes:
                conflicts.append(BookingConflict(
                    kind=ConflictKind.outside_operating_hours,
                    message=(
                        f"Outside operating hours on {day.isoformat()} "
                        f"({opens.strftime('%H:%M')}-{closes.strftime('%H:%M') if closes < next_day else '24:00'})"
                    ),
                    start_datetime=segment_start,
                    end_datetime=segment_end,
                ))
        day += timedelta(days=1)
    return conflicts


class BookingConflictResolver:
    """시설 예약 충돌 검사기"""

    def __init__(
        self,
        facilities: FacilityStore,
        events: Optional[EventStore] = None,
        settings: Optional[BookingSettings] = None,
    ):
        self.facilities = facilities
        self.events = events
        self.settings = settings or get_booking_settings()

    # =============================================
    # 조회 유틸
    # =============================================

    def get_facility(self, tenant_id: str, facility_id: str, timeout: Optional[float] = None) -> Facility:
        facility = self.facilities.get_facility(tenant_id, facility_id, timeout=timeout)
        if facility is None:
            raise NotFoundError("Facility", facility_id)
        return facility

    def _active_bookings(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str],
        timeout: Optional[float],
    ) -> List[FacilityBooking]:
        bookings = self.facilities.list_bookings(tenant_id, facility_id, start, end, timeout=timeout)
        return [
            b for b in bookings
            if b.id != exclude_booking_id and b.status in ACTIVE_BOOKING_STATUSES
        ]

    def _active_events(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        ignore_series: Optional[str],
        exclude_event_id: Optional[str],
        timeout: Optional[float],
    ) -> List[Event]:
        if self.events is None:
            return []
        return [
            e for e in self.events.list_facility_events(tenant_id, facility_id, start, end, timeout=timeout)
            if e.status in ACTIVE_EVENT_STATUSES
            and e.id != exclude_event_id
            and (ignore_series is None or (e.master_event_id != ignore_series and e.id != ignore_series))
        ]

    @staticmethod
    def _validate_window(start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValidationError("End time must be after start time", {"start": start, "end": end})

    # =============================================
    # 판정
    # =============================================

    def _evaluate(
        self,
        facility: Facility,
        bookings: List[FacilityBooking],
        events: List[Event],
        start: datetime,
        end: datetime,
        now: Optional[datetime],
        booking_rules: bool = True,
    ) -> List[BookingConflict]:
        conflicts: List[BookingConflict] = []

        if facility.status != FacilityStatus.available:
            conflicts.append(BookingConflict(
                kind=ConflictKind.facility_unavailable,
                message=f"Facility is {facility.status.value}",
                conflicting_id=facility.id,
            ))

        for booking in bookings:
            if overlaps(booking.start_datetime, booking.end_datetime, start, end):
                conflicts.append(BookingConflict(
                    kind=ConflictKind.overlap,
                    message="Overlaps an existing booking",
                    conflicting_id=booking.id,
                    start_datetime=booking.start_datetime,
                    end_datetime=booking.end_datetime,
                ))

        for event in events:
            if overlaps(event.start_datetime, event.end_datetime, start, end):
                conflicts.append(BookingConflict(
                    kind=ConflictKind.event_conflict,
                    message=f"Facility is reserved for event '{event.title}'",
                    conflicting_id=event.id,
                    start_datetime=event.start_datetime,
                    end_datetime=event.end_datetime,
                ))

        conflicts.extend(operating_hours_conflicts(facility, start, end))

        if booking_rules:
            minutes = (end - start).total_seconds() / 60
            if minutes < facility.min_booking_duration_minutes:
                conflicts.append(BookingConflict(
                    kind=ConflictKind.duration,
                    message=f"Booking must be at least {facility.min_booking_duration_minutes} minutes",
                ))
            if minutes > facility.max_booking_duration_minutes:
                conflicts.append(BookingConflict(
                    kind=ConflictKind.duration,
                    message=f"Booking cannot exceed {facility.max_booking_duration_minutes} minutes",
                ))
            if now is not None:
                if start < now:
                    conflicts.append(BookingConflict(
                        kind=ConflictKind.advance_window,
                        message="Cannot book in the past",
                    ))
                elif start > now + timedelta(days=facility.max_booking_days_in_advance):
                    conflicts.append(BookingConflict(
                        kind=ConflictKind.advance_window,
                        message=f"Cannot book more than {facility.max_booking_days_in_advance} days in advance",
                    ))

        return conflicts

    def is_available(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """같은 시설의 확정/체크인 예약과 겹치지 않으면 True"""
        self._validate_window(start, end)
        bookings = self._active_bookings(tenant_id, facility_id, start, end, exclude_booking_id, timeout)
        return not any(overlaps(b.start_datetime, b.end_datetime, start, end) for b in bookings)

    def check_booking(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConflictCheckResult:
        """회원 예약 요청 전체 검사 (충돌 항목을 모두 수집)"""
        self._validate_window(start, end)
        facility = self.get_facility(tenant_id, facility_id, timeout)
        bookings = self._active_bookings(tenant_id, facility_id, start, end, exclude_booking_id, timeout)
        events = self._active_events(tenant_id, facility_id, start, end, None, None, timeout)

        conflicts = self._evaluate(facility, bookings, events, start, end, now)
        if conflicts:
            logger.debug(f"예약 충돌 {len(conflicts)}건: facility={facility_id} {start}~{end}")
        return ConflictCheckResult(is_available=not conflicts, conflicts=conflicts)

    def check_resource(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        ignore_series: Optional[str] = None,
        exclude_event_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConflictCheckResult:
        """
        이벤트 배치용 검사

        예약 길이/사전 예약 규칙은 적용하지 않고, 시설 상태/겹침/운영 시간만 본다.
        ignore_series로 같은 반복 시리즈의 회차는 제외한다.
        """
        self._validate_window(start, end)
        facility = self.get_facility(tenant_id, facility_id, timeout)
        bookings = self._active_bookings(tenant_id, facility_id, start, end, None, timeout)
        events = self._active_events(tenant_id, facility_id, start, end, ignore_series, exclude_event_id, timeout)
        conflicts = self._evaluate(facility, bookings, events, start, end, None, booking_rules=False)
        return ConflictCheckResult(is_available=not conflicts, conflicts=conflicts)

    # =============================================
    # 빈 시간 탐색
    # =============================================

    def find_next_available_slot(
        self,
        tenant_id: str,
        facility_id: str,
        duration: timedelta,
        after: datetime,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> Optional[TimeSlot]:
        """
        after부터 일정 간격으로 전진하며 첫 번째 가능한 시간대 탐색

        탐색 범위(slot_search_horizon_days) 안에 없으면 None
        """
        if duration <= timedelta(0):
            raise ValidationError("Duration must be positive")
        facility = self.get_facility(tenant_id, facility_id, timeout)
        now = now or after
        step = timedelta(minutes=self.settings.slot_search_increment_minutes)
        horizon = after + timedelta(days=self.settings.slot_search_horizon_days)

        # 탐색 범위 전체를 한 번에 조회
        bookings = self._active_bookings(tenant_id, facility_id, after, horizon + duration, None, timeout)
        events = self._active_events(tenant_id, facility_id, after, horizon + duration, None, None, timeout)

        candidate = after
        while candidate <= horizon:
            candidate_end = candidate + duration
            if not self._evaluate(facility, bookings, events, candidate, candidate_end, now):
                logger.debug(f"빈 시간 발견: facility={facility_id} {candidate}")
                return TimeSlot(start_datetime=candidate, end_datetime=candidate_end)
            candidate += step

        logger.info(f"탐색 범위 내 빈 시간 없음: facility={facility_id} after={after}")
        return None

    def suggest_alternatives(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> List[TimeSlot]:
        """요청한 날짜 안에서 대안 시간대 (최대 max_alternatives개)"""
        self._validate_window(start, end)
        duration = end - start
        results: List[TimeSlot] = []
        for slot_start in self._grid_candidates(
            tenant_id, facility_id, start.date(), duration, now, timeout,
            first_hour=self.settings.alternative_day_start_hour,
            last_hour=self.settings.alternative_day_end_hour,
            tzinfo=start.tzinfo,
        ):
            if slot_start == start:
                continue
            results.append(TimeSlot(start_datetime=slot_start, end_datetime=slot_start + duration))
            if len(results) >= self.settings.max_alternatives:
                break
        return results

    def available_start_times(
        self,
        tenant_id: str,
        facility_id: str,
        day: date,
        duration: timedelta,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> List[datetime]:
        """해당 날짜의 예약 가능 시작 시각 (available_times_step_minutes 간격)"""
        return list(self._grid_candidates(tenant_id, facility_id, day, duration, now, timeout, tzinfo=now.tzinfo))

    def _grid_candidates(
        self,
        tenant_id: str,
        facility_id: str,
        day: date,
        duration: timedelta,
        now: datetime,
        timeout: Optional[float],
        first_hour: int = 0,
        last_hour: int = 24,
        tzinfo=None,
    ):
        facility = self.get_facility(tenant_id, facility_id, timeout)
        day_begin = datetime.combine(day, time.min, tzinfo=tzinfo)
        window_start = day_begin + timedelta(hours=first_hour)
        window_end = day_begin + timedelta(hours=last_hour)
        bookings = self._active_bookings(tenant_id, facility_id, window_start, window_end, None, timeout)
        events = self._active_events(tenant_id, facility_id, window_start, window_end, None, None, timeout)

        step = timedelta(minutes=self.settings.available_times_step_minutes)
        candidate = window_start
        while candidate + duration <= window_end:
            if not self._evaluate(facility, bookings, events, candidate, candidate + duration, now):
                yield candidate
            candidate += step
