"""
Supabase 저장소

저장소 인터페이스를 Supabase(PostgREST) 테이블 위에 구현
- 모든 쿼리는 .eq("tenant_id", tenant_id)로 테넌트 한정
- 버전 검사는 .eq("version", expected) 조건부 업데이트로 처리
- PostgREST는 여러 요청을 묶는 트랜잭션을 지원하지 않으므로 transaction()은 경계 표시만 한다.
  원자성이 필요한 구간은 버전 검사와 엔진 잠금으로 보호된다.
- 요청 timeout은 클라이언트의 postgrest 설정을 따른다 (호출자 timeout 인자는 인터페이스 호환용)
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel
from supabase import Client

from engine.errors import ConcurrencyConflict, NotFoundError
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
)
from engine.stores import (
    BookingLimitStore,
    EventStore,
    FacilityStore,
    HardwareStore,
    RegistrationStore,
)

from .supabase_client import get_supabase_client

M = TypeVar("M", bound=BaseModel)

# 테이블 이름
EVENTS = "events"
REGISTRATIONS = "event_registrations"
FACILITIES = "facilities"
BOOKINGS = "facility_bookings"
LIMITS = "member_booking_limits"
MEMBERS = "members"
HARDWARE = "hardware"
REQUIREMENTS = "event_equipment_requirements"
ASSIGNMENTS = "event_equipment_assignments"


def _row(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _parse(model_cls: Type[M], rows: Optional[List[Dict[str, Any]]]) -> List[M]:
    return [model_cls.model_validate(row) for row in rows or []]


class SupabaseStore(EventStore, RegistrationStore, FacilityStore, BookingLimitStore, HardwareStore):
    """Supabase 저장소 (모든 저장소 인터페이스 구현)"""

    def __init__(self, client: Optional[Client] = None):
        self.supabase = client or get_supabase_client()

    # =============================================
    # 공통
    # =============================================

    def _table(self, name: str, tenant_id: str, columns: str = "*"):
        return self.supabase.table(name).select(columns).eq("tenant_id", tenant_id)

    def _get(self, name: str, model_cls: Type[M], tenant_id: str, entity_id: str) -> Optional[M]:
        response = self._table(name, tenant_id).eq("id", entity_id).limit(1).execute()
        items = _parse(model_cls, response.data)
        return items[0] if items else None

    def _insert(self, name: str, tenant_id: str, model: M) -> M:
        if getattr(model, "tenant_id", tenant_id) != tenant_id:
            raise NotFoundError(type(model).__name__, getattr(model, "id", None))
        response = self.supabase.table(name).insert(_row(model)).execute()
        return _parse(type(model), response.data)[0] if response.data else model

    def _update(self, name: str, tenant_id: str, model: M) -> M:
        if model.tenant_id != tenant_id:
            raise NotFoundError(type(model).__name__, model.id)
        response = self.supabase.table(name).update(_row(model)).eq(
            "tenant_id", tenant_id
        ).eq("id", model.id).execute()
        if not response.data:
            raise NotFoundError(type(model).__name__, model.id)
        return _parse(type(model), response.data)[0]

    def _update_versioned(self, name: str, tenant_id: str, model: M, expected_version: Optional[int]) -> M:
        """버전 조건부 업데이트 - 조건 불일치면 ConcurrencyConflict"""
        if model.tenant_id != tenant_id:
            raise NotFoundError(type(model).__name__, model.id)

        current_version = expected_version
        if current_version is None:
            current = self._get(name, type(model), tenant_id, model.id)
            if current is None:
                raise NotFoundError(type(model).__name__, model.id)
            current_version = current.version

        data = _row(model)
        data["version"] = current_version + 1
        response = self.supabase.table(name).update(data).eq(
            "tenant_id", tenant_id
        ).eq("id", model.id).eq("version", current_version).execute()

        if not response.data:
            if self._get(name, type(model), tenant_id, model.id) is None:
                raise NotFoundError(type(model).__name__, model.id)
            raise ConcurrencyConflict(
                f"{type(model).__name__} {model.id} was modified concurrently",
                {"expected": current_version},
            )
        return _parse(type(model), response.data)[0]

    @contextmanager
    def transaction(self, tenant_id: str, timeout: Optional[float] = None) -> Iterator["SupabaseStore"]:
        logger.debug(f"Supabase 작업 구간 시작 (tenant={tenant_id}) - 요청 단위 커밋")
        yield self

    # =============================================
    # 이벤트
    # =============================================

    def get_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> Optional[Event]:
        return self._get(EVENTS, Event, tenant_id, event_id)

    def create_event(self, tenant_id: str, event: Event, timeout: Optional[float] = None) -> Event:
        return self._insert(EVENTS, tenant_id, event.model_copy(update={"version": 1}))

    def update_event(
        self,
        tenant_id: str,
        event: Event,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Event:
        return self._update_versioned(EVENTS, tenant_id, event, expected_version)

    def delete_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> bool:
        response = self.supabase.table(EVENTS).delete().eq("tenant_id", tenant_id).eq("id", event_id).execute()
        return len(response.data or []) > 0

    def list_occurrences(
        self,
        tenant_id: str,
        master_event_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        query = self._table(EVENTS, tenant_id).eq("master_event_id", master_event_id)
        if start is not None:
            query = query.gte("start_datetime", start.isoformat())
        if end is not None:
            query = query.lt("start_datetime", end.isoformat())
        response = query.order("start_datetime").execute()
        return _parse(Event, response.data)

    def list_masters(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        response = self._table(EVENTS, tenant_id).eq("is_recurring_master", True).execute()
        return _parse(Event, response.data)

    def list_events(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        response = self._table(EVENTS, tenant_id).order("start_datetime").execute()
        return _parse(Event, response.data)

    def list_facility_events(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        response = self._table(EVENTS, tenant_id).eq("facility_id", facility_id).eq(
            "is_recurring_master", False
        ).lt("start_datetime", end.isoformat()).gt("end_datetime", start.isoformat()).execute()
        return _parse(Event, response.data)

    # =============================================
    # 등록
    # =============================================

    def get_registration(
        self, tenant_id: str, registration_id: str, timeout: Optional[float] = None
    ) -> Optional[EventRegistration]:
        return self._get(REGISTRATIONS, EventRegistration, tenant_id, registration_id)

    def list_registrations(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        response = self._table(REGISTRATIONS, tenant_id).eq("event_id", event_id).order("registered_at").execute()
        return _parse(EventRegistration, response.data)

    def list_member_registrations(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        response = self._table(REGISTRATIONS, tenant_id).eq("member_id", member_id).order("registered_at").execute()
        return _parse(EventRegistration, response.data)

    def create_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        return self._insert(REGISTRATIONS, tenant_id, registration)

    def update_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        return self._update(REGISTRATIONS, tenant_id, registration)

    # =============================================
    # 시설 / 예약
    # =============================================

    def get_facility(self, tenant_id: str, facility_id: str, timeout: Optional[float] = None) -> Optional[Facility]:
        return self._get(FACILITIES, Facility, tenant_id, facility_id)

    def get_booking(
        self, tenant_id: str, booking_id: str, timeout: Optional[float] = None
    ) -> Optional[FacilityBooking]:
        return self._get(BOOKINGS, FacilityBooking, tenant_id, booking_id)

    def list_bookings(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        response = self._table(BOOKINGS, tenant_id).eq("facility_id", facility_id).lt(
            "start_datetime", end.isoformat()
        ).gt("end_datetime", start.isoformat()).order("start_datetime").execute()
        return _parse(FacilityBooking, response.data)

    def list_recurring_bookings(
        self,
        tenant_id: str,
        member_id: str,
        recurrence_group_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        query = self._table(BOOKINGS, tenant_id).eq("member_id", member_id).eq("is_recurring", True)
        if recurrence_group_id:
            query = query.eq("recurrence_group_id", recurrence_group_id)
        response = query.order("start_datetime").execute()
        return _parse(FacilityBooking, response.data)

    def list_member_bookings(
        self,
        tenant_id: str,
        member_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        response = self._table(BOOKINGS, tenant_id).eq("member_id", member_id).lt(
            "start_datetime", end.isoformat()
        ).gt("end_datetime", start.isoformat()).order("start_datetime").execute()
        return _parse(FacilityBooking, response.data)

    def create_booking(
        self, tenant_id: str, booking: FacilityBooking, timeout: Optional[float] = None
    ) -> FacilityBooking:
        return self._insert(BOOKINGS, tenant_id, booking.model_copy(update={"version": 1}))

    def update_booking(
        self,
        tenant_id: str,
        booking: FacilityBooking,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        return self._update_versioned(BOOKINGS, tenant_id, booking, expected_version)

    # =============================================
    # 회원 / 한도 정책
    # =============================================

    def get_member(self, tenant_id: str, member_id: str, timeout: Optional[float] = None) -> Optional[Member]:
        response = self._table(MEMBERS, tenant_id, "id, tenant_id, name, tier").eq("id", member_id).limit(1).execute()
        members = _parse(Member, response.data)
        return members[0] if members else None

    def list_limits(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[MemberBookingLimit]:
        response = self._table(LIMITS, tenant_id).or_(
            f"member_id.eq.{member_id},member_id.is.null"
        ).execute()
        return _parse(MemberBookingLimit, response.data)

    # =============================================
    # 장비
    # =============================================

    def get_hardware(self, tenant_id: str, hardware_id: str, timeout: Optional[float] = None) -> Optional[Hardware]:
        return self._get(HARDWARE, Hardware, tenant_id, hardware_id)

    def update_hardware(self, tenant_id: str, hardware: Hardware, timeout: Optional[float] = None) -> Hardware:
        return self._update(HARDWARE, tenant_id, hardware)

    def list_hardware(
        self, tenant_id: str, hardware_type_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> List[Hardware]:
        query = self._table(HARDWARE, tenant_id)
        if hardware_type_id:
            query = query.eq("hardware_type_id", hardware_type_id)
        response = query.order("name").execute()
        return _parse(Hardware, response.data)

    def get_requirement(
        self, tenant_id: str, requirement_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentRequirement]:
        return self._get(REQUIREMENTS, EventEquipmentRequirement, tenant_id, requirement_id)

    def list_requirements(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventEquipmentRequirement]:
        response = self._table(REQUIREMENTS, tenant_id).eq("event_id", event_id).execute()
        return _parse(EventEquipmentRequirement, response.data)

    def update_requirement(
        self, tenant_id: str, requirement: EventEquipmentRequirement, timeout: Optional[float] = None
    ) -> EventEquipmentRequirement:
        return self._update(REQUIREMENTS, tenant_id, requirement)

    def get_assignment(
        self, tenant_id: str, assignment_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentAssignment]:
        return self._get(ASSIGNMENTS, EventEquipmentAssignment, tenant_id, assignment_id)

    def list_assignments(
        self,
        tenant_id: str,
        hardware_id: Optional[str] = None,
        requirement_id: Optional[str] = None,
        event_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[EventEquipmentAssignment]:
        query = self._table(ASSIGNMENTS, tenant_id)
        if hardware_id:
            query = query.eq("hardware_id", hardware_id)
        if requirement_id:
            query = query.eq("requirement_id", requirement_id)
        if event_id:
            query = query.eq("event_id", event_id)
        response = query.order("assigned_at").execute()
        return _parse(EventEquipmentAssignment, response.data)

    def create_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        return self._insert(ASSIGNMENTS, tenant_id, assignment)

    def update_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        return self._update(ASSIGNMENTS, tenant_id, assignment)
