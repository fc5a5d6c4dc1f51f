"""
스케줄링 엔진 스키마 정의

Pydantic 모델을 사용하여 이벤트/등록/시설 예약/장비 데이터의 타입과 불변식 강제
모든 엔티티는 tenant_id를 가지며, 상호 참조는 객체가 아닌 id로만 표현한다.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def new_id() -> str:
    return str(uuid4())


# =============================================
# Enums
# =============================================

class Weekday(int, Enum):
    """요일 (date.weekday()와 동일한 번호)"""
    monday = 0
    tuesday = 1
    wednesday = 2
    thursday = 3
    friday = 4
    saturday = 5
    sunday = 6

    @classmethod
    def of(cls, value: date) -> "Weekday":
        return cls(value.weekday())


class EventType(str, Enum):
    """이벤트 유형"""
    class_session = "class"     # 정규 수업
    workshop = "workshop"       # 워크숍
    tournament = "tournament"   # 대회
    event = "event"             # 일반 행사
    private = "private"         # 개인 레슨
    maintenance = "maintenance" # 시설 점검


class EventStatus(str, Enum):
    """이벤트 상태"""
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    rescheduled = "rescheduled"


class RecurrenceType(str, Enum):
    """반복 유형"""
    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class RecurrenceStatus(str, Enum):
    """반복 시리즈 상태"""
    active = "active"
    paused = "paused"           # 생성 중단, 기존 일정 유지
    completed = "completed"
    cancelled = "cancelled"


class RegistrationStatus(str, Enum):
    """등록 상태"""
    confirmed = "confirmed"
    pending = "pending"
    cancelled = "cancelled"
    waitlisted = "waitlisted"
    no_show = "no_show"
    completed = "completed"


class FacilityStatus(str, Enum):
    """시설 상태"""
    available = "available"
    occupied = "occupied"
    maintenance = "maintenance"
    out_of_order = "out_of_order"
    retired = "retired"


class BookingStatus(str, Enum):
    """시설 예약 상태"""
    confirmed = "confirmed"
    pending = "pending"         # 승인 대기
    checked_in = "checked_in"
    checked_out = "checked_out"
    cancelled = "cancelled"
    no_show = "no_show"
    completed = "completed"


class MembershipTier(str, Enum):
    """회원 등급"""
    basic = "basic"
    premium = "premium"
    vip = "vip"
    family = "family"


class HardwareStatus(str, Enum):
    """장비 상태"""
    available = "available"
    assigned = "assigned"
    maintenance = "maintenance"
    out_of_order = "out_of_order"
    lost = "lost"
    retired = "retired"


class HardwareCondition(int, Enum):
    """장비 컨디션 (높을수록 좋음)"""
    poor = 1
    fair = 2
    good = 3
    excellent = 4


class AssignmentStatus(str, Enum):
    """장비 배정 상태"""
    reserved = "reserved"
    checked_out = "checked_out"
    in_use = "in_use"
    returned = "returned"
    missing = "missing"
    damaged = "damaged"


class UpdateStrategy(str, Enum):
    """반복 일정 변경 전략"""
    preserve_registrations = "preserve_registrations"  # 등록자 있는 일정 유지
    force_update = "force_update"                      # 미래 일정 전체 재생성 (원자적)
    cancel_conflicts = "cancel_conflicts"              # 충돌 일정만 개별 취소


class RecurrenceUpdateType(str, Enum):
    """반복 예약 변경 범위"""
    this_occurrence = "this_occurrence"
    this_and_future = "this_and_future"
    all_occurrences = "all_occurrences"   # 완료되지 않은 전체


class ConflictKind(str, Enum):
    """예약 충돌 유형"""
    overlap = "overlap"
    event_conflict = "event_conflict"
    facility_unavailable = "facility_unavailable"
    outside_operating_hours = "outside_operating_hours"
    closed_day = "closed_day"
    duration = "duration"
    advance_window = "advance_window"


# 활성 상태 묶음
ACTIVE_BOOKING_STATUSES = (BookingStatus.confirmed, BookingStatus.checked_in)
ACTIVE_EVENT_STATUSES = (EventStatus.scheduled, EventStatus.in_progress)
ACTIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.reserved, AssignmentStatus.checked_out, AssignmentStatus.in_use)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """열린 구간 겹침 - 끝점이 맞닿는 경우는 겹치지 않음"""
    return start_a < end_b and end_a > start_b


# =============================================
# Recurrence / Event
# =============================================

class RecurrencePattern(BaseModel):
    """반복 패턴"""
    type: RecurrenceType = RecurrenceType.none
    interval: int = Field(default=1, ge=1, description="반복 간격")
    days_of_week: List[Weekday] = Field(default_factory=list, description="요일 (주간 반복 전용)")
    end_date: Optional[date] = Field(None, description="반복 종료일 (포함)")
    max_occurrences: Optional[int] = Field(None, ge=1, description="최대 생성 횟수")

    @model_validator(mode="after")
    def validate_days(self):
        if self.days_of_week and self.type != RecurrenceType.weekly:
            raise ValueError("days_of_week는 주간 반복에서만 사용할 수 있습니다")
        return self


class EventDraft(BaseModel):
    """반복 시리즈 생성/변경 시 사용하는 이벤트 템플릿"""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    event_type: EventType = EventType.class_session
    start_datetime: datetime
    end_datetime: datetime
    facility_id: Optional[str] = None
    instructor_id: Optional[str] = None
    max_capacity: int = Field(default=0, ge=0)
    price: Optional[float] = Field(None, ge=0)
    registration_deadline: Optional[datetime] = None
    cancellation_deadline: Optional[datetime] = None
    allow_waitlist: bool = True
    required_equipment: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("종료 시간은 시작 시간 이후여야 합니다")
        return self


class Event(BaseModel):
    """이벤트 (단일/반복 마스터/반복 회차)"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    title: str
    description: str = ""
    event_type: EventType = EventType.class_session
    start_datetime: datetime
    end_datetime: datetime
    facility_id: Optional[str] = None
    instructor_id: Optional[str] = None
    max_capacity: int = Field(default=0, ge=0)
    current_enrollment: int = Field(default=0, ge=0)
    price: Optional[float] = None
    status: EventStatus = EventStatus.scheduled
    registration_deadline: Optional[datetime] = None
    cancellation_deadline: Optional[datetime] = None
    allow_waitlist: bool = True
    required_equipment: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    cancellation_reason: Optional[str] = None

    # 반복 일정
    recurrence: Optional[RecurrencePattern] = None
    master_event_id: Optional[str] = None
    is_recurring_master: bool = False
    occurrence_number: Optional[int] = Field(None, ge=1)
    last_generated_until: Optional[datetime] = None
    recurrence_status: Optional[RecurrenceStatus] = None
    is_detached: bool = False              # 개별 수정됨 - 재생성 대상 아님
    diverged_from_series: bool = False     # 시리즈 변경 시 등록자 때문에 유지됨
    original_start_datetime: Optional[datetime] = None

    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_event(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("종료 시간은 시작 시간 이후여야 합니다")
        if self.recurrence is not None and not self.is_recurring_master:
            raise ValueError("반복 패턴은 마스터 이벤트에만 지정할 수 있습니다")
        if self.is_recurring_master and self.master_event_id:
            raise ValueError("마스터 이벤트는 다른 마스터를 참조할 수 없습니다")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end_datetime - self.start_datetime

    @property
    def is_occurrence(self) -> bool:
        return self.master_event_id is not None

    @property
    def available_spots(self) -> int:
        return max(0, self.max_capacity - self.current_enrollment)


class EventRegistration(BaseModel):
    """이벤트 등록"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    event_id: str
    member_id: str
    member_name: Optional[str] = None
    registered_at: datetime
    status: RegistrationStatus = RegistrationStatus.confirmed
    is_waitlisted: bool = False
    waitlist_position: Optional[int] = Field(None, ge=1)
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    no_show: bool = False
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status != RegistrationStatus.cancelled


class Member(BaseModel):
    """회원 (정책 해석용 최소 모델)"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    tier: MembershipTier = MembershipTier.basic


# =============================================
# Facility / Booking
# =============================================

class Facility(BaseModel):
    """시설"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    facility_type_id: Optional[str] = None
    status: FacilityStatus = FacilityStatus.available
    capacity: Optional[int] = None
    max_booking_days_in_advance: int = Field(default=30, ge=0)
    min_booking_duration_minutes: int = Field(default=60, ge=1)
    max_booking_duration_minutes: int = Field(default=180, ge=1)
    operating_hours_start: Optional[time] = None
    operating_hours_end: Optional[time] = None
    operating_days: List[Weekday] = Field(default_factory=list, description="비어 있으면 매일 운영")
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.min_booking_duration_minutes > self.max_booking_duration_minutes:
            raise ValueError("최소 예약 시간이 최대 예약 시간보다 깁니다")
        return self


class FacilityBooking(BaseModel):
    """시설 예약"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    facility_id: str
    member_id: str
    start_datetime: datetime
    end_datetime: datetime
    status: BookingStatus = BookingStatus.confirmed
    purpose: Optional[str] = None
    participant_count: Optional[int] = None
    cost: Optional[float] = None
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    penalty_applied: bool = False
    penalty_amount: float = 0.0
    notes: Optional[str] = None
    is_recurring: bool = False
    recurrence_group_id: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("종료 시간은 시작 시간 이후여야 합니다")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES


class BookingRequest(BaseModel):
    """시설 예약 요청"""
    facility_id: str
    member_id: str
    start_datetime: datetime
    end_datetime: datetime
    purpose: Optional[str] = None
    participant_count: Optional[int] = Field(None, ge=1)
    cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class RecurringBookingRequest(BookingRequest):
    """반복 시설 예약 요청 (start/end는 첫 회차)"""
    pattern: RecurrencePattern

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("종료 시간은 시작 시간 이후여야 합니다")
        return self


class RecurringBookingChange(BaseModel):
    """반복 예약 일괄 변경 내용 (시각은 각 회차 날짜에 적용)"""
    update_type: RecurrenceUpdateType = RecurrenceUpdateType.this_and_future
    booking_id: Optional[str] = None          # this_occurrence 전용
    new_start_time: Optional[time] = None
    new_end_time: Optional[time] = None
    new_facility_id: Optional[str] = None
    purpose: Optional[str] = None
    participant_count: Optional[int] = Field(None, ge=1)
    reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_change(self):
        if self.update_type == RecurrenceUpdateType.this_occurrence and not self.booking_id:
            raise ValueError("this_occurrence 변경에는 booking_id가 필요합니다")
        if self.new_end_time is not None and self.new_start_time is None:
            raise ValueError("new_end_time은 new_start_time과 함께 지정해야 합니다")
        return self


# =============================================
# Booking limits
# =============================================

class MemberBookingLimit(BaseModel):
    """회원 예약 한도 정책"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    member_id: Optional[str] = None           # None이면 테넌트 공통 정책
    facility_id: Optional[str] = None
    facility_type_id: Optional[str] = None
    applicable_tier: Optional[MembershipTier] = None

    max_concurrent_bookings: int = Field(default=3, ge=0)
    max_bookings_per_day: int = Field(default=2, ge=0)
    max_bookings_per_week: int = Field(default=5, ge=0)
    max_bookings_per_month: int = Field(default=20, ge=0)
    max_booking_duration_hours: float = Field(default=4, gt=0)
    max_advance_booking_days: int = Field(default=30, ge=0)
    min_advance_booking_hours: float = Field(default=2, ge=0)

    earliest_booking_time: Optional[time] = None
    latest_booking_time: Optional[time] = None
    allowed_days: Optional[List[Weekday]] = None
    requires_approval: bool = False
    allow_recurring_bookings: bool = True
    cancellation_penalty_hours: int = Field(default=24, ge=0)

    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_active: bool = True
    notes: Optional[str] = None

    def is_effective(self, on: date) -> bool:
        if not self.is_active:
            return False
        if self.effective_from and on < self.effective_from:
            return False
        if self.effective_to and on > self.effective_to:
            return False
        return True


class MemberBookingUsage(BaseModel):
    """회원 이용 현황 스냅샷 (표시용, 검증에는 사용하지 않음)"""
    member_id: str
    reference_date: datetime
    concurrent_bookings: int = 0
    bookings_today: int = 0
    bookings_this_week: int = 0
    bookings_this_month: int = 0
    hours_this_week: float = 0.0
    hours_this_month: float = 0.0
    upcoming_bookings: int = 0


class LimitValidationResult(BaseModel):
    """예약 한도 검증 결과"""
    is_valid: bool = True
    violations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    remaining_concurrent: int = 0
    remaining_bookings_today: int = 0
    remaining_bookings_this_week: int = 0
    remaining_bookings_this_month: int = 0
    requires_approval: bool = False
    applied_limit: Optional[MemberBookingLimit] = None


# =============================================
# Equipment
# =============================================

class Hardware(BaseModel):
    """장비"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    serial_number: str = ""
    hardware_type_id: str
    status: HardwareStatus = HardwareStatus.available
    condition: HardwareCondition = HardwareCondition.good
    location: Optional[str] = None


class EventEquipmentRequirement(BaseModel):
    """이벤트 장비 요구사항"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    event_id: str
    hardware_type_id: Optional[str] = None
    specific_hardware_id: Optional[str] = None
    description: str = ""
    quantity: int = Field(default=1, ge=1)
    is_mandatory: bool = True
    auto_assign: bool = False
    minimum_condition: Optional[HardwareCondition] = None
    is_fulfilled: bool = False

    @model_validator(mode="after")
    def validate_target(self):
        if not self.hardware_type_id and not self.specific_hardware_id:
            raise ValueError("장비 유형 또는 특정 장비 중 하나는 지정해야 합니다")
        return self


class EventEquipmentAssignment(BaseModel):
    """이벤트 장비 배정"""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    event_id: str
    requirement_id: str
    hardware_id: str
    member_id: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.reserved
    window_start: datetime
    window_end: datetime
    assigned_at: datetime
    checked_out_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ASSIGNMENT_STATUSES


# =============================================
# 결과 모델
# =============================================

class GenerationResult(BaseModel):
    """반복 일정 생성/연장 결과"""
    master_event_id: str
    created: int = 0
    skipped_existing: int = 0
    last_generated_until: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    occurrence_ids: List[str] = Field(default_factory=list)


class ConflictingEvent(BaseModel):
    """반복 변경으로 영향을 받는 일정"""
    id: str
    title: str
    start_datetime: datetime
    registration_count: int = 0
    member_names: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


class UpdateRecurrenceResult(BaseModel):
    """반복 일정 변경 결과"""
    success: bool = True
    message: str = ""
    strategy: UpdateStrategy
    occurrences_deleted: int = 0
    occurrences_created: int = 0
    occurrences_preserved: int = 0
    occurrences_cancelled: int = 0
    registrations_affected: int = 0
    conflicting_events: List[ConflictingEvent] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    """반복 일정 무결성 검사 결과"""
    is_valid: bool = True
    masters_without_occurrences: List[str] = Field(default_factory=list)
    orphaned_occurrences: List[str] = Field(default_factory=list)
    occurrences_with_pattern: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.now)


class CancellationResult(BaseModel):
    """등록 취소 결과"""
    registration_id: str
    previous_status: RegistrationStatus
    promoted_registration_ids: List[str] = Field(default_factory=list)
    current_enrollment: int = 0
    waitlist_length: int = 0


class BulkCheckInResult(BaseModel):
    """일괄 체크인 결과"""
    total_requested: int = 0
    successful_check_ins: int = 0
    already_checked_in: int = 0
    not_found: int = 0
    errors: List[str] = Field(default_factory=list)
    checked_in_member_ids: List[str] = Field(default_factory=list)


class BulkRegistrationItem(BaseModel):
    """일괄 등록 항목 결과"""
    event_id: str
    member_id: str
    success: bool
    status: Optional[RegistrationStatus] = None
    registration_id: Optional[str] = None
    waitlist_position: Optional[int] = None
    error: Optional[str] = None


class BulkRegistrationResult(BaseModel):
    """일괄 등록 결과"""
    items: List[BulkRegistrationItem] = Field(default_factory=list)
    successful: int = 0
    failed: int = 0


class BookingConflict(BaseModel):
    """시설 예약 충돌 항목"""
    kind: ConflictKind
    message: str
    conflicting_id: Optional[str] = None
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ConflictCheckResult(BaseModel):
    """시설 예약 가능 여부 검사 결과"""
    is_available: bool = True
    conflicts: List[BookingConflict] = Field(default_factory=list)

    def has(self, kind: ConflictKind) -> bool:
        return any(c.kind == kind for c in self.conflicts)


class TimeSlot(BaseModel):
    """시간대"""
    start_datetime: datetime
    end_datetime: datetime


class BookingCancellationResult(BaseModel):
    """시설 예약 취소 결과"""
    booking_id: str
    cancelled_at: datetime
    hours_before_start: float
    penalty_applied: bool = False
    penalty_amount: float = 0.0
    refund_amount: float = 0.0


class RecurringBookingResult(BaseModel):
    """반복 예약 생성/변경 결과 (회차별 실패는 errors에 기록)"""
    success: bool = False
    recurrence_group_id: Optional[str] = None
    message: str = ""
    bookings_created: int = 0
    bookings_modified: int = 0
    bookings_failed: int = 0
    bookings: List[FacilityBooking] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class RecurringBookingSummary(BaseModel):
    """회원의 반복 예약 그룹 요약"""
    recurrence_group_id: str
    facility_id: str
    first_booking: datetime
    last_booking: datetime
    total_occurrences: int = 0
    completed_occurrences: int = 0
    upcoming_occurrences: int = 0
    is_active: bool = False


class AssignmentResult(BaseModel):
    """장비 배정 결과"""
    requirement_id: str
    assigned_hardware_ids: List[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)   # hardware_id -> 사유
    is_fulfilled: bool = False
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class AutoAssignResult(BaseModel):
    """자동 배정 결과 (이벤트 전체)"""
    event_id: str
    requirements: List[AssignmentResult] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def total_assigned(self) -> int:
        return sum(len(r.assigned_hardware_ids) for r in self.requirements)


class EquipmentSummary(BaseModel):
    """이벤트 장비 준비 현황"""
    event_id: str
    ready_for_event: bool = True
    total_requirements: int = 0
    fulfilled_requirements: int = 0
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class OccurrenceChanges(BaseModel):
    """단일 회차 수정 내용"""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    max_capacity: Optional[int] = Field(None, ge=0)
    instructor_id: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = None  # 기존 값에 병합

    @field_validator("title")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if v else v
