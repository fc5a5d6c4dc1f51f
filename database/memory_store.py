"""
인메모리 저장소

테스트 및 임베디드 사용을 위한 전체 저장소 인터페이스 구현
- (tenant_id, id) 키로 저장하므로 다른 테넌트 데이터는 구조적으로 조회 불가
- 쓰기마다 되돌리기 로그를 남겨 트랜잭션 실패 시 블록 내 쓰기만 롤백
- 저장/반환 시 항상 복사본을 사용 (호출자가 수정해도 저장소는 변하지 않음)
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from engine.errors import ConcurrencyConflict, LockTimeout, NotFoundError
from engine.schemas import (
    Event,
    EventEquipmentAssignment,
    EventEquipmentRequirement,
    EventRegistration,
    Facility,
    FacilityBooking,
    Hardware,
    Member,
    MemberBookingLimit,
    overlaps,
)
from engine.stores import (
    BookingLimitStore,
    EventStore,
    FacilityStore,
    HardwareStore,
    RegistrationStore,
)


Key = Tuple[str, str]
JournalEntry = Tuple[str, Key, Optional[BaseModel]]

_TABLES = (
    "events",
    "registrations",
    "facilities",
    "bookings",
    "members",
    "limits",
    "hardware",
    "requirements",
    "assignments",
)


class InMemoryStore(EventStore, RegistrationStore, FacilityStore, BookingLimitStore, HardwareStore):
    """인메모리 저장소 (모든 저장소 인터페이스 구현)"""

    def __init__(self, default_timeout: float = 10.0):
        self._tables: Dict[str, Dict[Key, BaseModel]] = {name: {} for name in _TABLES}
        self._lock = threading.RLock()
        self._local = threading.local()
        self.default_timeout = default_timeout

    # =============================================
    # 내부 유틸
    # =============================================

    @contextmanager
    def _guard(self, timeout: Optional[float]) -> Iterator[None]:
        wait = self.default_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise LockTimeout("Timed out waiting for in-memory store", {"timeout": wait})
        try:
            yield
        finally:
            self._lock.release()

    def _journals(self) -> List[List[JournalEntry]]:
        stack = getattr(self._local, "journals", None)
        if stack is None:
            stack = []
            self._local.journals = stack
        return stack

    def _get(self, table: str, tenant_id: str, entity_id: str, timeout: Optional[float]) -> Optional[Any]:
        with self._guard(timeout):
            value = self._tables[table].get((tenant_id, entity_id))
            return value.model_copy(deep=True) if value is not None else None

    def _values(self, table: str, tenant_id: str, timeout: Optional[float]) -> List[Any]:
        with self._guard(timeout):
            return [
                value.model_copy(deep=True)
                for (tenant, _), value in self._tables[table].items()
                if tenant == tenant_id
            ]

    def _write(
        self,
        table: str,
        tenant_id: str,
        entity_id: str,
        value: Optional[BaseModel],
        timeout: Optional[float],
    ) -> None:
        key = (tenant_id, entity_id)
        with self._guard(timeout):
            rows = self._tables[table]
            previous = rows.get(key)
            journals = self._journals()
            if journals:
                journals[-1].append((table, key, previous))
            if value is None:
                rows.pop(key, None)
            else:
                rows[key] = value.model_copy(deep=True)

    def _rollback(self, journal: List[JournalEntry]) -> None:
        with self._lock:
            for table, key, previous in reversed(journal):
                if previous is None:
                    self._tables[table].pop(key, None)
                else:
                    self._tables[table][key] = previous
        logger.debug(f"인메모리 트랜잭션 롤백: {len(journal)}건")

    @staticmethod
    def _check_tenant(tenant_id: str, entity: Any) -> None:
        if entity.tenant_id != tenant_id:
            raise NotFoundError(type(entity).__name__, entity.id)

    # =============================================
    # 트랜잭션
    # =============================================

    @contextmanager
    def transaction(self, tenant_id: str, timeout: Optional[float] = None) -> Iterator["InMemoryStore"]:
        journals = self._journals()
        journal: List[JournalEntry] = []
        journals.append(journal)
        try:
            yield self
        except BaseException:
            journals.pop()
            self._rollback(journal)
            raise
        journals.pop()
        if journals:
            # 바깥 트랜잭션이 실패하면 함께 되돌린다
            journals[-1].extend(journal)

    # =============================================
    # 이벤트
    # =============================================

    def get_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> Optional[Event]:
        return self._get("events", tenant_id, event_id, timeout)

    def create_event(self, tenant_id: str, event: Event, timeout: Optional[float] = None) -> Event:
        self._check_tenant(tenant_id, event)
        event = event.model_copy(update={"version": 1})
        self._write("events", tenant_id, event.id, event, timeout)
        return event.model_copy(deep=True)

    def update_event(
        self,
        tenant_id: str,
        event: Event,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Event:
        self._check_tenant(tenant_id, event)
        with self._guard(timeout):
            current = self._tables["events"].get((tenant_id, event.id))
            if current is None:
                raise NotFoundError("Event", event.id)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflict(
                    f"Event {event.id} was modified concurrently",
                    {"expected": expected_version, "actual": current.version},
                )
            updated = event.model_copy(update={"version": current.version + 1})
            self._write("events", tenant_id, event.id, updated, timeout)
            return updated.model_copy(deep=True)

    def delete_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> bool:
        with self._guard(timeout):
            if (tenant_id, event_id) not in self._tables["events"]:
                return False
            self._write("events", tenant_id, event_id, None, timeout)
            return True

    def list_occurrences(
        self,
        tenant_id: str,
        master_event_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        occurrences = [
            e for e in self._values("events", tenant_id, timeout)
            if e.master_event_id == master_event_id
            and (start is None or e.start_datetime >= start)
            and (end is None or e.start_datetime < end)
        ]
        return sorted(occurrences, key=lambda e: e.start_datetime)

    def list_masters(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        return [e for e in self._values("events", tenant_id, timeout) if e.is_recurring_master]

    def list_events(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        return sorted(self._values("events", tenant_id, timeout), key=lambda e: e.start_datetime)

    def list_facility_events(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        return [
            e for e in self._values("events", tenant_id, timeout)
            if e.facility_id == facility_id
            and not e.is_recurring_master
            and overlaps(e.start_datetime, e.end_datetime, start, end)
        ]

    # =============================================
    # 등록
    # =============================================

    def get_registration(
        self, tenant_id: str, registration_id: str, timeout: Optional[float] = None
    ) -> Optional[EventRegistration]:
        return self._get("registrations", tenant_id, registration_id, timeout)

    def list_registrations(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        registrations = [r for r in self._values("registrations", tenant_id, timeout) if r.event_id == event_id]
        return sorted(registrations, key=lambda r: r.registered_at)

    def list_member_registrations(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        registrations = [r for r in self._values("registrations", tenant_id, timeout) if r.member_id == member_id]
        return sorted(registrations, key=lambda r: r.registered_at)

    def create_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        self._check_tenant(tenant_id, registration)
        self._write("registrations", tenant_id, registration.id, registration, timeout)
        return registration.model_copy(deep=True)

    def update_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        self._check_tenant(tenant_id, registration)
        if self.get_registration(tenant_id, registration.id, timeout) is None:
            raise NotFoundError("EventRegistration", registration.id)
        self._write("registrations", tenant_id, registration.id, registration, timeout)
        return registration.model_copy(deep=True)

    # =============================================
    # 시설 / 예약
    # =============================================

    def save_facility(self, facility: Facility) -> Facility:
        self._write("facilities", facility.tenant_id, facility.id, facility, None)
        return facility

    def get_facility(self, tenant_id: str, facility_id: str, timeout: Optional[float] = None) -> Optional[Facility]:
        return self._get("facilities", tenant_id, facility_id, timeout)

    def get_booking(
        self, tenant_id: str, booking_id: str, timeout: Optional[float] = None
    ) -> Optional[FacilityBooking]:
        return self._get("bookings", tenant_id, booking_id, timeout)

    def list_bookings(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        bookings = [
            b for b in self._values("bookings", tenant_id, timeout)
            if b.facility_id == facility_id and overlaps(b.start_datetime, b.end_datetime, start, end)
        ]
        return sorted(bookings, key=lambda b: b.start_datetime)

    def list_member_bookings(
        self,
        tenant_id: str,
        member_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        bookings = [
            b for b in self._values("bookings", tenant_id, timeout)
            if b.member_id == member_id and overlaps(b.start_datetime, b.end_datetime, start, end)
        ]
        return sorted(bookings, key=lambda b: b.start_datetime)

    def list_recurring_bookings(
        self,
        tenant_id: str,
        member_id: str,
        recurrence_group_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        bookings = [
            b for b in self._values("bookings", tenant_id, timeout)
            if b.member_id == member_id and b.recurrence_group_id is not None
            and recurrence_group_id in (None, b.recurrence_group_id)
        ]
        return sorted(bookings, key=lambda b: b.start_datetime)

    def create_booking(
        self, tenant_id: str, booking: FacilityBooking, timeout: Optional[float] = None
    ) -> FacilityBooking:
        self._check_tenant(tenant_id, booking)
        booking = booking.model_copy(update={"version": 1})
        self._write("bookings", tenant_id, booking.id, booking, timeout)
        return booking.model_copy(deep=True)

    def update_booking(
        self,
        tenant_id: str,
        booking: FacilityBooking,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        self._check_tenant(tenant_id, booking)
        with self._guard(timeout):
            current = self._tables["bookings"].get((tenant_id, booking.id))
            if current is None:
                raise NotFoundError("FacilityBooking", booking.id)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflict(
                    f"Booking {booking.id} was modified concurrently",
                    {"expected": expected_version, "actual": current.version},
                )
            updated = booking.model_copy(update={"version": current.version + 1})
            self._write("bookings", tenant_id, booking.id, updated, timeout)
            return updated.model_copy(deep=True)

    # =============================================
    # 회원 / 한도 정책
    # =============================================

    def save_member(self, member: Member) -> Member:
        self._write("members", member.tenant_id, member.id, member, None)
        return member

    def save_limit(self, limit: MemberBookingLimit) -> MemberBookingLimit:
        self._write("limits", limit.tenant_id, limit.id, limit, None)
        return limit

    def get_member(self, tenant_id: str, member_id: str, timeout: Optional[float] = None) -> Optional[Member]:
        return self._get("members", tenant_id, member_id, timeout)

    def list_limits(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[MemberBookingLimit]:
        return [
            limit for limit in self._values("limits", tenant_id, timeout)
            if limit.member_id in (member_id, None)
        ]

    # =============================================
    # 장비
    # =============================================

    def save_hardware(self, hardware: Hardware) -> Hardware:
        self._write("hardware", hardware.tenant_id, hardware.id, hardware, None)
        return hardware

    def save_requirement(self, requirement: EventEquipmentRequirement) -> EventEquipmentRequirement:
        self._write("requirements", requirement.tenant_id, requirement.id, requirement, None)
        return requirement

    def get_hardware(self, tenant_id: str, hardware_id: str, timeout: Optional[float] = None) -> Optional[Hardware]:
        return self._get("hardware", tenant_id, hardware_id, timeout)

    def update_hardware(self, tenant_id: str, hardware: Hardware, timeout: Optional[float] = None) -> Hardware:
        self._check_tenant(tenant_id, hardware)
        if self.get_hardware(tenant_id, hardware.id, timeout) is None:
            raise NotFoundError("Hardware", hardware.id)
        self._write("hardware", tenant_id, hardware.id, hardware, timeout)
        return hardware.model_copy(deep=True)

    def list_hardware(
        self, tenant_id: str, hardware_type_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> List[Hardware]:
        items = [
            h for h in self._values("hardware", tenant_id, timeout)
            if hardware_type_id is None or h.hardware_type_id == hardware_type_id
        ]
        return sorted(items, key=lambda h: h.name)

    def get_requirement(
        self, tenant_id: str, requirement_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentRequirement]:
        return self._get("requirements", tenant_id, requirement_id, timeout)

    def list_requirements(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventEquipmentRequirement]:
        return [r for r in self._values("requirements", tenant_id, timeout) if r.event_id == event_id]

    def update_requirement(
        self, tenant_id: str, requirement: EventEquipmentRequirement, timeout: Optional[float] = None
    ) -> EventEquipmentRequirement:
        self._check_tenant(tenant_id, requirement)
        self._write("requirements", tenant_id, requirement.id, requirement, timeout)
        return requirement.model_copy(deep=True)

    def get_assignment(
        self, tenant_id: str, assignment_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentAssignment]:
        return self._get("assignments", tenant_id, assignment_id, timeout)

    def list_assignments(
        self,
        tenant_id: str,
        hardware_id: Optional[str] = None,
        requirement_id: Optional[str] = None,
        event_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[EventEquipmentAssignment]:
        assignments = [
            a for a in self._values("assignments", tenant_id, timeout)
            if (hardware_id is None or a.hardware_id == hardware_id)
            and (requirement_id is None or a.requirement_id == requirement_id)
            and (event_id is None or a.event_id == event_id)
        ]
        return sorted(assignments, key=lambda a: a.assigned_at)

    def create_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        self._check_tenant(tenant_id, assignment)
        self._write("assignments", tenant_id, assignment.id, assignment, timeout)
        return assignment.model_copy(deep=True)

    def update_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        self._check_tenant(tenant_id, assignment)
        self._write("assignments", tenant_id, assignment.id, assignment, timeout)
        return assignment.model_copy(deep=True)
