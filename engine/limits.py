"""
회원 예약 한도 검사

정책 우선순위 (구체적인 것이 우선):
    회원+시설 > 회원+시설유형 > 회원+등급 > 기본 정책 > 등급별 내장 기본값

사용량은 항상 실제 예약 기록에서 다시 계산한다 (MemberBookingUsage 스냅샷은 표시용).
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from .config import BookingSettings, get_booking_settings
from .errors import NotFoundError, ValidationError
from .schemas import (
    BookingStatus,
    Facility,
    FacilityBooking,
    LimitValidationResult,
    Member,
    MemberBookingLimit,
    MemberBookingUsage,
    MembershipTier,
    Weekday,
)
from .stores import BookingLimitStore, FacilityStore


# =============================================
# 등급별 기본 한도
# =============================================

DEFAULT_TIER_LIMITS: Dict[Optional[MembershipTier], Dict[str, Any]] = {
    MembershipTier.basic: dict(
        max_concurrent_bookings=2, max_bookings_per_day=1, max_bookings_per_week=3, max_bookings_per_month=10,
        max_booking_duration_hours=2, max_advance_booking_days=14, min_advance_booking_hours=4,
        earliest_booking_time=time(6, 0), latest_booking_time=time(22, 0), cancellation_penalty_hours=24,
    ),
    MembershipTier.premium: dict(
        max_concurrent_bookings=3, max_bookings_per_day=2, max_bookings_per_week=5, max_bookings_per_month=20,
        max_booking_duration_hours=4, max_advance_booking_days=30, min_advance_booking_hours=2,
        earliest_booking_time=time(5, 0), latest_booking_time=time(23, 0), cancellation_penalty_hours=12,
    ),
    MembershipTier.vip: dict(
        max_concurrent_bookings=5, max_bookings_per_day=3, max_bookings_per_week=10, max_bookings_per_month=40,
        max_booking_duration_hours=8, max_advance_booking_days=60, min_advance_booking_hours=1,
        earliest_booking_time=time(0, 0), latest_booking_time=time(23, 59, 59), cancellation_penalty_hours=6,
    ),
    MembershipTier.family: dict(
        max_concurrent_bookings=4, max_bookings_per_day=2, max_bookings_per_week=7, max_bookings_per_month=25,
        max_booking_duration_hours=6, max_advance_booking_days=30, min_advance_booking_hours=2,
        earliest_booking_time=time(6, 0), latest_booking_time=time(22, 0), cancellation_penalty_hours=24,
    ),
    # 알 수 없는 등급 - 가장 보수적인 정책
    None: dict(
        max_concurrent_bookings=1, max_bookings_per_day=1, max_bookings_per_week=2, max_bookings_per_month=5,
        max_booking_duration_hours=1, max_advance_booking_days=7, min_advance_booking_hours=24,
        requires_approval=True, cancellation_penalty_hours=48,
    ),
}


def default_limit_for(tenant_id: str, member: Member) -> MemberBookingLimit:
    """등급별 내장 기본 정책"""
    values = DEFAULT_TIER_LIMITS.get(member.tier, DEFAULT_TIER_LIMITS[None])
    return MemberBookingLimit(
        id=f"default:{member.tier.value if member.tier else 'none'}",
        tenant_id=tenant_id,
        member_id=member.id,
        applicable_tier=member.tier,
        notes="Built-in tier default",
        **values,
    )


def week_start(day: date) -> date:
    """일요일 시작 주"""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_bounds(day: date) -> Tuple[date, date]:
    first = day.replace(day=1)
    following = (first.replace(year=first.year + 1, month=1) if first.month == 12
                 else first.replace(month=first.month + 1))
    return first, following


def _scope_rank(limit: MemberBookingLimit, member: Member, facility: Facility) -> Optional[int]:
    """정책 적용 범위 순위 (낮을수록 구체적). 적용 대상이 아니면 None"""
    if limit.applicable_tier is not None and limit.applicable_tier != member.tier:
        return None
    if limit.facility_id is not None:
        return 0 if limit.facility_id == facility.id else None
    if limit.facility_type_id is not None:
        return 1 if limit.facility_type_id == facility.facility_type_id else None
    if limit.applicable_tier is not None:
        return 2
    return 3


class BookingLimitEnforcer:
    """회원 예약 한도 검사기"""

    def __init__(
        self,
        limits: BookingLimitStore,
        facilities: FacilityStore,
        settings: Optional[BookingSettings] = None,
    ):
        self.limits = limits
        self.facilities = facilities
        self.settings = settings or get_booking_settings()

    # =============================================
    # 정책 해석
    # =============================================

    def _get_member(self, tenant_id: str, member_id: str, timeout: Optional[float]) -> Member:
        member = self.limits.get_member(tenant_id, member_id, timeout=timeout)
        if member is None:
            raise NotFoundError("Member", member_id)
        return member

    def _get_facility(self, tenant_id: str, facility_id: str, timeout: Optional[float]) -> Facility:
        facility = self.facilities.get_facility(tenant_id, facility_id, timeout=timeout)
        if facility is None:
            raise NotFoundError("Facility", facility_id)
        return facility

    def resolve_policy(
        self,
        tenant_id: str,
        member: Member,
        facility: Facility,
        on: date,
        timeout: Optional[float] = None,
    ) -> MemberBookingLimit:
        """적용할 정책 하나를 결정"""
        ranked = []
        for limit in self.limits.list_limits(tenant_id, member.id, timeout=timeout):
            if not limit.is_effective(on):
                continue
            rank = _scope_rank(limit, member, facility)
            if rank is None:
                continue
            # 같은 범위라면 회원 전용 정책이 테넌트 공통 정책보다 우선
            ranked.append(((rank, 0 if limit.member_id else 1), limit))

        if not ranked:
            return default_limit_for(tenant_id, member)

        ranked.sort(key=lambda item: item[0])
        return ranked[0][1]

    # =============================================
    # 사용량 계산
    # =============================================

    def _live_bookings(
        self,
        tenant_id: str,
        member_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str],
        timeout: Optional[float],
    ) -> List[FacilityBooking]:
        bookings = self.facilities.list_member_bookings(tenant_id, member_id, start, end, timeout=timeout)
        return [
            b for b in bookings
            if b.status != BookingStatus.cancelled and b.id != exclude_booking_id
        ]

    def _usage(
        self,
        tenant_id: str,
        member_id: str,
        reference: datetime,
        now: datetime,
        exclude_booking_id: Optional[str],
        timeout: Optional[float],
    ) -> MemberBookingUsage:
        day = reference.date()
        first_of_week = week_start(day)
        first_of_month, next_month = month_bounds(day)

        def at(d: date) -> datetime:
            return datetime.combine(d, time.min, tzinfo=reference.tzinfo)

        range_start = min(at(first_of_week), at(first_of_month), now)
        range_end = max(at(first_of_week + timedelta(days=7)), at(next_month), now + timedelta(seconds=1))
        bookings = self._live_bookings(tenant_id, member_id, range_start, range_end, exclude_booking_id, timeout)

        def starts_within(b: FacilityBooking, lower: date, upper: date) -> bool:
            return lower <= b.start_datetime.date() < upper

        week = [b for b in bookings if starts_within(b, first_of_week, first_of_week + timedelta(days=7))]
        month = [b for b in bookings if starts_within(b, first_of_month, next_month)]

        def hours(items: List[FacilityBooking]) -> float:
            return sum((b.end_datetime - b.start_datetime).total_seconds() for b in items) / 3600

        return MemberBookingUsage(
            member_id=member_id,
            reference_date=reference,
            concurrent_bookings=sum(1 for b in bookings if b.start_datetime <= now < b.end_datetime),
            bookings_today=sum(1 for b in bookings if b.start_datetime.date() == day),
            bookings_this_week=len(week),
            bookings_this_month=len(month),
            hours_this_week=round(hours(week), 2),
            hours_this_month=round(hours(month), 2),
            upcoming_bookings=sum(1 for b in bookings if b.start_datetime > now),
        )

    def get_usage(
        self,
        tenant_id: str,
        member_id: str,
        now: datetime,
        reference: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> MemberBookingUsage:
        """회원 이용 현황 스냅샷 (표시용)"""
        self._get_member(tenant_id, member_id, timeout)
        return self._usage(tenant_id, member_id, reference or now, now, None, timeout)

    # =============================================
    # 검증
    # =============================================

    def validate(
        self,
        tenant_id: str,
        member_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_booking_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LimitValidationResult:
        """
        예약 요청을 회원 정책으로 검증

        위반 항목을 모두 모아서 반환한다 (첫 위반에서 멈추지 않음).
        """
        if end <= start:
            raise ValidationError("End time must be after start time", {"start": start, "end": end})

        member = self._get_member(tenant_id, member_id, timeout)
        facility = self._get_facility(tenant_id, facility_id, timeout)
        policy = self.resolve_policy(tenant_id, member, facility, start.date(), timeout)
        usage = self._usage(tenant_id, member_id, start, now, exclude_booking_id, timeout)

        violations: List[str] = []
        warnings: List[str] = []

        # 횟수 한도
        if usage.concurrent_bookings >= policy.max_concurrent_bookings:
            violations.append("MaxConcurrentBookings exceeded")
        if usage.bookings_today >= policy.max_bookings_per_day:
            violations.append("MaxBookingsPerDay exceeded")
        if usage.bookings_this_week >= policy.max_bookings_per_week:
            violations.append("MaxBookingsPerWeek exceeded")
        if usage.bookings_this_month >= policy.max_bookings_per_month:
            violations.append("MaxBookingsPerMonth exceeded")

        # 예약 길이
        duration_hours = (end - start).total_seconds() / 3600
        if duration_hours > policy.max_booking_duration_hours:
            violations.append(
                f"Booking duration ({duration_hours:g}h) exceeds maximum of {policy.max_booking_duration_hours:g}h"
            )

        # 사전 예약 범위
        lead = start - now
        if lead > timedelta(days=policy.max_advance_booking_days):
            violations.append(f"Cannot book more than {policy.max_advance_booking_days} days in advance")
        if lead < timedelta(hours=policy.min_advance_booking_hours):
            violations.append(f"Must book at least {policy.min_advance_booking_hours:g} hours in advance")

        # 이용 가능 시간대 / 요일
        if policy.earliest_booking_time and start.time() < policy.earliest_booking_time:
            violations.append(f"Cannot book before {policy.earliest_booking_time.strftime('%H:%M')}")
        if policy.latest_booking_time:
            day_begin = datetime.combine(start.date(), time.min, tzinfo=start.tzinfo)
            latest = day_begin + timedelta(
                hours=policy.latest_booking_time.hour,
                minutes=policy.latest_booking_time.minute,
                seconds=policy.latest_booking_time.second,
            )
            if end > latest:
                violations.append(f"Cannot book after {policy.latest_booking_time.strftime('%H:%M')}")
        if policy.allowed_days is not None and Weekday.of(start.date()) not in policy.allowed_days:
            violations.append(f"Bookings not allowed on {Weekday.of(start.date()).name.capitalize()}")

        if policy.max_bookings_per_day and usage.bookings_today >= policy.max_bookings_per_day * self.settings.usage_warning_ratio:
            warnings.append(
                f"Approaching daily booking limit ({usage.bookings_today}/{policy.max_bookings_per_day})"
            )

        result = LimitValidationResult(
            is_valid=not violations,
            violations=violations,
            warnings=warnings,
            remaining_concurrent=max(0, policy.max_concurrent_bookings - usage.concurrent_bookings),
            remaining_bookings_today=max(0, policy.max_bookings_per_day - usage.bookings_today),
            remaining_bookings_this_week=max(0, policy.max_bookings_per_week - usage.bookings_this_week),
            remaining_bookings_this_month=max(0, policy.max_bookings_per_month - usage.bookings_this_month),
            requires_approval=policy.requires_approval,
            applied_limit=policy,
        )

        if violations:
            logger.info(f"예약 한도 위반 ({member_id}): {', '.join(violations)}")
        return result
