"""
클럽 스케줄링 엔진 패키지

- RecurrenceExpander: 반복 패턴 -> 회차 시간대
- EventOccurrenceManager: 시리즈 생성, 롤링 연장, 반복 패턴 변경
- RegistrationLedger: 정원/대기자 상태 관리, 체크인
- BookingConflictResolver: 시설 겹침/운영 시간/예약 규칙 검사, 빈 시간 탐색
- BookingLimitEnforcer: 회원 예약 한도 정책
- FacilityBookingService: 시설 예약 생성/취소/변경
- EquipmentAllocator: 이벤트 장비 배정
"""

from .bookings import FacilityBookingService
from .conflicts import BookingConflictResolver
from .equipment import EquipmentAllocator
from .errors import (
    AlreadyRegistered,
    BookingConflictError,
    CheckInClosed,
    ConcurrencyConflict,
    ConflictError,
    EventFull,
    GenerationLimitExceeded,
    LimitExceeded,
    LockTimeout,
    NotFoundError,
    PartialFailure,
    RegistrationClosed,
    SchedulingError,
    ValidationError,
)
from .limits import BookingLimitEnforcer
from .locks import KeyedLockRegistry, default_locks
from .notifications import NotificationPublisher, SchedulingEvent, SchedulingEventType
from .occurrences import EventOccurrenceManager
from .properties import PropertyDefinition, PropertySchema, apply_defaults, validate_properties
from .recurrence import OccurrenceSlot, RecurrenceExpander, describe_pattern
from .registration import RegistrationLedger

__all__ = [
    # Components
    "RecurrenceExpander",
    "OccurrenceSlot",
    "describe_pattern",
    "EventOccurrenceManager",
    "RegistrationLedger",
    "BookingConflictResolver",
    "BookingLimitEnforcer",
    "FacilityBookingService",
    "EquipmentAllocator",
    # Concurrency
    "KeyedLockRegistry",
    "default_locks",
    # Notifications
    "NotificationPublisher",
    "SchedulingEvent",
    "SchedulingEventType",
    # Custom fields
    "PropertyDefinition",
    "PropertySchema",
    "validate_properties",
    "apply_defaults",
    # Errors
    "SchedulingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AlreadyRegistered",
    "EventFull",
    "BookingConflictError",
    "ConcurrencyConflict",
    "LockTimeout",
    "RegistrationClosed",
    "CheckInClosed",
    "LimitExceeded",
    "GenerationLimitExceeded",
    "PartialFailure",
]
