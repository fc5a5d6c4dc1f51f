"""
시설 예약 서비스

예약 요청은 (tenant_id, facility_id) -> (tenant_id, member_id) 잠금 안에서
한도 검사 -> 충돌 검사 -> 저장 순서로 처리된다.
반복 예약은 회차마다 같은 절차를 밟고, 실패한 회차는 결과에 기록한다.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from loguru import logger

from .config import BookingSettings, get_booking_settings
from .conflicts import BookingConflictResolver
from .errors import (
    BookingConflictError,
    CheckInClosed,
    LimitExceeded,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from .limits import BookingLimitEnforcer
from .locks import KeyedLockRegistry, default_locks, facility_key, member_key
from .notifications import NotificationPublisher, SchedulingEventType
from .recurrence import RecurrenceExpander
from .schemas import (
    BookingCancellationResult,
    BookingRequest,
    BookingStatus,
    FacilityBooking,
    RecurrenceUpdateType,
    RecurringBookingChange,
    RecurringBookingRequest,
    RecurringBookingResult,
    RecurringBookingSummary,
    new_id,
)
from .stores import BookingLimitStore, EventStore, FacilityStore
from .transitions import ensure_transition


# 반복 예약 일괄 변경에서 제외하는 상태
SETTLED_BOOKING_STATUSES = (BookingStatus.cancelled, BookingStatus.completed)
# 이용을 마친 상태
USED_BOOKING_STATUSES = (BookingStatus.completed, BookingStatus.checked_out)


class FacilityBookingService:
    """시설 예약 서비스"""

    def __init__(
        self,
        facilities: FacilityStore,
        limits: BookingLimitStore,
        events: Optional[EventStore] = None,
        resolver: Optional[BookingConflictResolver] = None,
        enforcer: Optional[BookingLimitEnforcer] = None,
        publisher: Optional[NotificationPublisher] = None,
        locks: Optional[KeyedLockRegistry] = None,
        settings: Optional[BookingSettings] = None,
        expander: Optional[RecurrenceExpander] = None,
    ):
        self.facilities = facilities
        self.limits = limits
        self.settings = settings or get_booking_settings()
        self.resolver = resolver or BookingConflictResolver(facilities, events, self.settings)
        self.enforcer = enforcer or BookingLimitEnforcer(limits, facilities, self.settings)
        self.publisher = publisher
        self.locks = locks or default_locks
        self.expander = expander or RecurrenceExpander(ceiling=self.settings.max_recurring_bookings)

    # =============================================
    # 내부 유틸
    # =============================================

    def _get_booking(self, tenant_id: str, booking_id: str, timeout: Optional[float]) -> FacilityBooking:
        booking = self.facilities.get_booking(tenant_id, booking_id, timeout=timeout)
        if booking is None:
            raise NotFoundError("FacilityBooking", booking_id)
        return booking

    def _save(self, tenant_id: str, booking: FacilityBooking, timeout: Optional[float]) -> FacilityBooking:
        return self.facilities.update_booking(tenant_id, booking, expected_version=booking.version, timeout=timeout)

    def _lock_timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.lock_timeout_seconds

    @contextmanager
    def _held(self, tenant_id: str, facility_id: str, member_id: str, timeout: Optional[float]) -> Iterator[None]:
        """시설 -> 회원 순서로 잠금 (회원 한도 검사와 저장 사이에 다른 예약이 끼지 않도록)"""
        wait = self._lock_timeout(timeout)
        with self.locks.hold(facility_key(tenant_id, facility_id), timeout=wait):
            with self.locks.hold(member_key(tenant_id, member_id), timeout=wait):
                yield

    def _validate(
        self,
        tenant_id: str,
        member_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str],
        timeout: Optional[float],
    ) -> bool:
        """한도 + 충돌 검사. 승인 필요 여부를 반환"""
        limit = self.enforcer.validate(
            tenant_id, member_id, facility_id, start, end, now,
            exclude_booking_id=exclude_booking_id, timeout=timeout,
        )
        if not limit.is_valid:
            raise LimitExceeded(limit.violations, {
                "remaining_bookings_today": limit.remaining_bookings_today,
                "remaining_bookings_this_week": limit.remaining_bookings_this_week,
                "remaining_bookings_this_month": limit.remaining_bookings_this_month,
            })
        for warning in limit.warnings:
            logger.warning(f"예약 한도 경고 ({member_id}): {warning}")

        check = self.resolver.check_booking(
            tenant_id, facility_id, start, end, now,
            exclude_booking_id=exclude_booking_id, timeout=timeout,
        )
        if not check.is_available:
            raise BookingConflictError(
                "; ".join(c.message for c in check.conflicts),
                check.conflicts,
            )
        return limit.requires_approval

    # =============================================
    # 예약
    # =============================================

    def book(
        self,
        tenant_id: str,
        request: BookingRequest,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        """
        시설 예약

        Raises:
            LimitExceeded: 회원 한도 위반 (위반 목록 포함)
            BookingConflictError: 시설 충돌 (충돌 목록 포함)
        """
        booking = self._create(tenant_id, request, now, timeout)
        self._announce(tenant_id, booking)
        return booking

    def _create(
        self,
        tenant_id: str,
        request: BookingRequest,
        now: datetime,
        timeout: Optional[float],
        recurrence_group_id: Optional[str] = None,
    ) -> FacilityBooking:
        with self._held(tenant_id, request.facility_id, request.member_id, timeout):
            with self.facilities.transaction(tenant_id, timeout=timeout):
                requires_approval = self._validate(
                    tenant_id, request.member_id, request.facility_id,
                    request.start_datetime, request.end_datetime, now, None, timeout,
                )
                booking = FacilityBooking(
                    tenant_id=tenant_id,
                    status=BookingStatus.pending if requires_approval else BookingStatus.confirmed,
                    is_recurring=recurrence_group_id is not None,
                    recurrence_group_id=recurrence_group_id,
                    **request.model_dump(),
                )
                return self.facilities.create_booking(tenant_id, booking, timeout=timeout)

    def _announce(self, tenant_id: str, booking: FacilityBooking) -> None:
        logger.info(
            f"시설 예약: facility={booking.facility_id} member={booking.member_id} "
            f"{booking.start_datetime:%Y-%m-%d %H:%M}~{booking.end_datetime:%H:%M} ({booking.status.value})"
        )
        if self.publisher:
            self.publisher.emit(SchedulingEventType.BOOKING_CREATED, tenant_id, "booking", booking.id,
                                facility_id=booking.facility_id, member_id=booking.member_id,
                                status=booking.status.value,
                                recurrence_group_id=booking.recurrence_group_id)

    def approve_booking(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        """승인 대기 예약 승인 (그 사이 생긴 충돌은 다시 확인)"""
        facility_id = self._get_booking(tenant_id, booking_id, timeout).facility_id
        with self.locks.hold(facility_key(tenant_id, facility_id), timeout=self._lock_timeout(timeout)):
            with self.facilities.transaction(tenant_id, timeout=timeout):
                booking = self._get_booking(tenant_id, booking_id, timeout)
                ensure_transition(booking.status, BookingStatus.confirmed, "booking")
                if not self.resolver.is_available(
                    tenant_id, facility_id, booking.start_datetime, booking.end_datetime,
                    exclude_booking_id=booking.id, timeout=timeout,
                ):
                    raise BookingConflictError("Facility was booked while approval was pending")
                booking.status = BookingStatus.confirmed
                booking = self._save(tenant_id, booking, timeout)
        logger.info(f"예약 승인: {booking_id}")
        return booking

    # =============================================
    # 이용 상태
    # =============================================

    def check_in_booking(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        """체크인 (시작 15분 전부터 종료 전까지)"""
        with self.facilities.transaction(tenant_id, timeout=timeout):
            booking = self._get_booking(tenant_id, booking_id, timeout)
            ensure_transition(booking.status, BookingStatus.checked_in, "booking")

            opens = booking.start_datetime - timedelta(minutes=self.settings.check_in_early_minutes)
            if now < opens:
                raise CheckInClosed(
                    f"Check-in opens at {opens.isoformat()}",
                    {"opens": opens.isoformat()},
                )
            if now >= booking.end_datetime:
                raise CheckInClosed("Booking has already ended", {"end": booking.end_datetime.isoformat()})

            booking.status = BookingStatus.checked_in
            booking.checked_in_at = now
            booking = self._save(tenant_id, booking, timeout)
        logger.info(f"시설 체크인: {booking_id}")
        return booking

    def check_out_booking(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        with self.facilities.transaction(tenant_id, timeout=timeout):
            booking = self._get_booking(tenant_id, booking_id, timeout)
            ensure_transition(booking.status, BookingStatus.checked_out, "booking")
            booking.status = BookingStatus.checked_out
            booking.checked_out_at = now
            booking = self._save(tenant_id, booking, timeout)
        logger.info(f"시설 체크아웃: {booking_id}")
        return booking

    def mark_booking_no_show(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        """시작 시간이 지난 미체크인 예약을 노쇼 처리"""
        with self.facilities.transaction(tenant_id, timeout=timeout):
            booking = self._get_booking(tenant_id, booking_id, timeout)
            ensure_transition(booking.status, BookingStatus.no_show, "booking")
            if now < booking.start_datetime:
                raise ValidationError("Booking has not started yet", {"start": booking.start_datetime.isoformat()})
            booking.status = BookingStatus.no_show
            booking = self._save(tenant_id, booking, timeout)
        logger.info(f"시설 예약 노쇼: {booking_id}")
        return booking

    # =============================================
    # 취소 / 변경
    # =============================================

    def cancel_booking(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BookingCancellationResult:
        """
        예약 취소

        정책의 cancellation_penalty_hours 이내 취소는 비용의 50% 위약금
        """
        with self.facilities.transaction(tenant_id, timeout=timeout):
            booking = self._get_booking(tenant_id, booking_id, timeout)
            ensure_transition(booking.status, BookingStatus.cancelled, "booking")

            member = self.limits.get_member(tenant_id, booking.member_id, timeout=timeout)
            if member is None:
                raise NotFoundError("Member", booking.member_id)
            facility = self.resolver.get_facility(tenant_id, booking.facility_id, timeout)
            policy = self.enforcer.resolve_policy(tenant_id, member, facility, booking.start_datetime.date(), timeout)

            hours_before = (booking.start_datetime - now).total_seconds() / 3600
            cost = booking.cost or 0.0
            penalty = 0.0
            if hours_before < policy.cancellation_penalty_hours:
                penalty = round(cost * self.settings.cancellation_penalty_rate, 2)
                booking.penalty_applied = True
                booking.penalty_amount = penalty

            booking.status = BookingStatus.cancelled
            booking.cancelled_at = now
            booking.cancellation_reason = reason or "Cancelled by member"
            booking = self._save(tenant_id, booking, timeout)

        logger.info(
            f"시설 예약 취소: {booking_id} (시작 {hours_before:.1f}시간 전"
            f"{', 위약금 ' + str(penalty) if booking.penalty_applied else ''})"
        )
        if self.publisher:
            self.publisher.emit(SchedulingEventType.BOOKING_CANCELLED, tenant_id, "booking", booking_id,
                                facility_id=booking.facility_id, penalty_applied=booking.penalty_applied)
        return BookingCancellationResult(
            booking_id=booking_id,
            cancelled_at=now,
            hours_before_start=round(hours_before, 2),
            penalty_applied=booking.penalty_applied,
            penalty_amount=penalty,
            refund_amount=round(cost - penalty, 2),
        )

    def modify_booking(
        self,
        tenant_id: str,
        booking_id: str,
        now: datetime,
        new_start: Optional[datetime] = None,
        new_end: Optional[datetime] = None,
        new_facility_id: Optional[str] = None,
        purpose: Optional[str] = None,
        participant_count: Optional[int] = None,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        """
        예약 변경

        확정 예약만, 시작 2시간 전까지 가능. 자기 자신은 제외하고 다시 검증한다.
        """
        current = self._get_booking(tenant_id, booking_id, timeout)
        facility_id = new_facility_id or current.facility_id

        with self._held(tenant_id, facility_id, current.member_id, timeout):
            with self.facilities.transaction(tenant_id, timeout=timeout):
                booking = self._get_booking(tenant_id, booking_id, timeout)
                if booking.status != BookingStatus.confirmed:
                    raise ValidationError(
                        "Only confirmed bookings can be modified",
                        {"status": booking.status.value},
                    )
                cutoff = now + timedelta(hours=self.settings.modify_cutoff_hours)
                if booking.start_datetime <= cutoff:
                    raise ValidationError(
                        f"Booking cannot be modified less than {self.settings.modify_cutoff_hours} hours before start"
                    )

                start = new_start or booking.start_datetime
                end = new_end or booking.end_datetime
                if end <= start:
                    raise ValidationError("End time must be after start time", {"start": start, "end": end})

                self._validate(tenant_id, booking.member_id, facility_id, start, end, now, booking.id, timeout)

                booking.facility_id = facility_id
                booking.start_datetime = start
                booking.end_datetime = end
                if purpose:
                    booking.purpose = purpose
                if participant_count is not None:
                    booking.participant_count = participant_count
                note = f"[MODIFIED {now:%Y-%m-%d %H:%M}]: {reason or 'No reason given'}"
                booking.notes = f"{booking.notes}\n{note}" if booking.notes else note
                booking = self._save(tenant_id, booking, timeout)

        logger.info(f"시설 예약 변경: {booking_id} -> {start:%Y-%m-%d %H:%M}~{end:%H:%M}")
        return booking

    # =============================================
    # 반복 예약
    # =============================================

    def book_recurring(
        self,
        tenant_id: str,
        request: RecurringBookingRequest,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> RecurringBookingResult:
        """
        반복 시설 예약

        패턴으로 전개한 회차마다 단건 예약과 같은 검사를 거친다.
        실패한 회차는 errors에 남기고 나머지 회차는 계속 예약한다.
        한 번에 만드는 회차는 max_recurring_bookings 까지.

        Raises:
            LimitExceeded: 회원 정책이 반복 예약을 허용하지 않음
        """
        member = self.limits.get_member(tenant_id, request.member_id, timeout=timeout)
        if member is None:
            raise NotFoundError("Member", request.member_id)
        facility = self.resolver.get_facility(tenant_id, request.facility_id, timeout)
        policy = self.enforcer.resolve_policy(tenant_id, member, facility, request.start_datetime.date(), timeout)
        if not policy.allow_recurring_bookings:
            raise LimitExceeded(["Recurring bookings are not allowed"], {"policy_id": policy.id})

        slots = self.expander.expand(
            request.pattern, request.start_datetime, request.end_datetime,
            max_count=self.settings.max_recurring_bookings,
        )
        base = request.model_dump(exclude={"pattern", "start_datetime", "end_datetime"})
        group_id = new_id()
        result = RecurringBookingResult()

        for slot in slots:
            single = BookingRequest(start_datetime=slot.start_datetime, end_datetime=slot.end_datetime, **base)
            try:
                booking = self._create(tenant_id, single, now, timeout, recurrence_group_id=group_id)
            except (LimitExceeded, BookingConflictError, ValidationError) as e:
                result.errors.append(f"Slot {slot.start_datetime:%Y-%m-%d %H:%M} unavailable: {e.message}")
                result.bookings_failed += 1
                continue
            except SchedulingError as e:
                result.errors.append(f"Failed to create booking for {slot.start_datetime:%Y-%m-%d %H:%M}: {e.message}")
                result.bookings_failed += 1
                continue
            self._announce(tenant_id, booking)
            result.bookings.append(booking)
            result.bookings_created += 1

        result.success = result.bookings_created > 0
        if result.success:
            result.recurrence_group_id = group_id
            result.message = f"Successfully created {result.bookings_created} recurring bookings"
        else:
            result.message = "No bookings could be created"

        logger.info(
            f"반복 예약: facility={request.facility_id} member={request.member_id} "
            f"생성 {result.bookings_created}, 실패 {result.bookings_failed}"
        )
        return result

    def modify_recurring(
        self,
        tenant_id: str,
        member_id: str,
        recurrence_group_id: str,
        change: RecurringBookingChange,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> RecurringBookingResult:
        """
        반복 예약 일괄 변경

        각 회차는 modify_booking 규칙(확정 상태, 변경 마감)을 그대로 따른다.
        취소/완료된 회차는 대상에서 제외한다.
        """
        bookings = self.facilities.list_recurring_bookings(
            tenant_id, member_id, recurrence_group_id, timeout=timeout
        )
        if not bookings:
            raise NotFoundError("RecurringBookingGroup", recurrence_group_id)

        if change.update_type == RecurrenceUpdateType.this_occurrence:
            targets = [b for b in bookings if b.id == change.booking_id]
            if not targets:
                raise NotFoundError("FacilityBooking", change.booking_id)
        else:
            targets = [b for b in bookings if b.status not in SETTLED_BOOKING_STATUSES]
            if change.update_type == RecurrenceUpdateType.this_and_future:
                targets = [b for b in targets if b.start_datetime >= now]

        result = RecurringBookingResult(recurrence_group_id=recurrence_group_id)
        for booking in targets:
            start, end = _shifted(booking, change)
            try:
                updated = self.modify_booking(
                    tenant_id, booking.id, now,
                    new_start=start,
                    new_end=end,
                    new_facility_id=change.new_facility_id,
                    purpose=change.purpose,
                    participant_count=change.participant_count,
                    reason=change.reason,
                    timeout=timeout,
                )
            except SchedulingError as e:
                result.errors.append(f"Failed to modify booking on {booking.start_datetime:%Y-%m-%d %H:%M}: {e.message}")
                result.bookings_failed += 1
                continue
            result.bookings.append(updated)
            result.bookings_modified += 1

        result.success = result.bookings_modified > 0
        result.message = f"Modified {result.bookings_modified} recurring bookings"
        logger.info(
            f"반복 예약 변경 ({change.update_type.value}): group={recurrence_group_id} "
            f"변경 {result.bookings_modified}, 실패 {result.bookings_failed}"
        )
        return result

    def get_member_recurring_bookings(
        self,
        tenant_id: str,
        member_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> List[RecurringBookingSummary]:
        """회원의 반복 예약 그룹별 요약 (첫 회차 순)"""
        groups: Dict[str, List[FacilityBooking]] = {}
        for booking in self.facilities.list_recurring_bookings(tenant_id, member_id, timeout=timeout):
            groups.setdefault(booking.recurrence_group_id, []).append(booking)

        summaries = []
        for group_id, bookings in groups.items():
            starts = [b.start_datetime for b in bookings]
            summaries.append(RecurringBookingSummary(
                recurrence_group_id=group_id,
                facility_id=bookings[0].facility_id,
                first_booking=min(starts),
                last_booking=max(starts),
                total_occurrences=len(bookings),
                completed_occurrences=sum(1 for b in bookings if b.status in USED_BOOKING_STATUSES),
                upcoming_occurrences=sum(
                    1 for b in bookings
                    if b.start_datetime > now and b.status in (BookingStatus.confirmed, BookingStatus.pending)
                ),
                is_active=any(b.start_datetime > now and b.status != BookingStatus.cancelled for b in bookings),
            ))
        return sorted(summaries, key=lambda s: s.first_booking)


def _shifted(
    booking: FacilityBooking, change: RecurringBookingChange
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """회차 날짜에 새 시각 적용. 종료 시각이 없으면 기존 길이 유지"""
    if change.new_start_time is None:
        return None, None
    day = booking.start_datetime.date()
    tz = booking.start_datetime.tzinfo
    start = datetime.combine(day, change.new_start_time, tzinfo=tz)
    if change.new_end_time is not None:
        end = datetime.combine(day, change.new_end_time, tzinfo=tz)
    else:
        end = start + (booking.end_datetime - booking.start_datetime)
    return start, end
