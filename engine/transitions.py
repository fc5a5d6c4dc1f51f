"""
엔티티 상태 전이 테이블

이벤트 / 등록 / 시설 예약 / 장비 배정의 허용 전이를 명시적으로 정의
"""

from typing import Dict, FrozenSet, Type
from enum import Enum

from .errors import ValidationError
from .schemas import (
    AssignmentStatus,
    BookingStatus,
    EventStatus,
    RegistrationStatus,
)


EVENT_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.scheduled: frozenset({
        EventStatus.in_progress, EventStatus.cancelled, EventStatus.rescheduled, EventStatus.completed,
    }),
    EventStatus.rescheduled: frozenset({
        EventStatus.in_progress, EventStatus.cancelled, EventStatus.rescheduled, EventStatus.completed,
    }),
    EventStatus.in_progress: frozenset({EventStatus.completed, EventStatus.cancelled}),
    EventStatus.completed: frozenset(),
    EventStatus.cancelled: frozenset(),
}

REGISTRATION_TRANSITIONS: Dict[RegistrationStatus, FrozenSet[RegistrationStatus]] = {
    RegistrationStatus.pending: frozenset({
        RegistrationStatus.confirmed, RegistrationStatus.waitlisted, RegistrationStatus.cancelled,
    }),
    RegistrationStatus.waitlisted: frozenset({RegistrationStatus.confirmed, RegistrationStatus.cancelled}),
    RegistrationStatus.confirmed: frozenset({
        RegistrationStatus.cancelled, RegistrationStatus.no_show, RegistrationStatus.completed,
    }),
    RegistrationStatus.no_show: frozenset(),
    RegistrationStatus.completed: frozenset(),
    RegistrationStatus.cancelled: frozenset(),
}

BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.pending: frozenset({BookingStatus.confirmed, BookingStatus.cancelled}),
    BookingStatus.confirmed: frozenset({
        BookingStatus.checked_in, BookingStatus.cancelled, BookingStatus.no_show, BookingStatus.completed,
    }),
    BookingStatus.checked_in: frozenset({BookingStatus.checked_out, BookingStatus.completed}),
    BookingStatus.checked_out: frozenset({BookingStatus.completed}),
    BookingStatus.no_show: frozenset(),
    BookingStatus.cancelled: frozenset(),
    BookingStatus.completed: frozenset(),
}

ASSIGNMENT_TRANSITIONS: Dict[AssignmentStatus, FrozenSet[AssignmentStatus]] = {
    AssignmentStatus.reserved: frozenset({
        AssignmentStatus.checked_out, AssignmentStatus.in_use, AssignmentStatus.returned,
    }),
    AssignmentStatus.checked_out: frozenset({
        AssignmentStatus.in_use, AssignmentStatus.returned, AssignmentStatus.missing, AssignmentStatus.damaged,
    }),
    AssignmentStatus.in_use: frozenset({
        AssignmentStatus.returned, AssignmentStatus.missing, AssignmentStatus.damaged,
    }),
    AssignmentStatus.returned: frozenset(),
    AssignmentStatus.missing: frozenset({AssignmentStatus.returned}),
    AssignmentStatus.damaged: frozenset({AssignmentStatus.returned}),
}

_TABLES: Dict[Type[Enum], Dict] = {
    EventStatus: EVENT_TRANSITIONS,
    RegistrationStatus: REGISTRATION_TRANSITIONS,
    BookingStatus: BOOKING_TRANSITIONS,
    AssignmentStatus: ASSIGNMENT_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    """전이 가능 여부"""
    table = _TABLES[type(current)]
    return target in table.get(current, frozenset())


def ensure_transition(current: Enum, target: Enum, entity: str = "entity") -> None:
    """허용되지 않은 전이면 ValidationError"""
    if not can_transition(current, target):
        raise ValidationError(
            f"Cannot change {entity} status from {current.value} to {target.value}",
            {"from": current.value, "to": target.value},
        )
