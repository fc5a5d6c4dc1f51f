"""
저장소 인터페이스

엔진은 저장 방식을 알지 못하며 아래 추상 인터페이스로만 데이터에 접근한다.
- 모든 메서드는 tenant_id를 명시적으로 받고, 조회는 항상 해당 테넌트로 한정된다
- 모든 메서드는 호출자 timeout(초)을 받는다
- update_* 는 expected_version이 주어지면 버전 불일치 시 ConcurrencyConflict
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional

from .schemas import (
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


class TransactionalStore(ABC):
    """트랜잭션 지원 저장소"""

    @abstractmethod
    def transaction(self, tenant_id: str, timeout: Optional[float] = None) -> AbstractContextManager:
        """블록이 예외로 끝나면 블록 안의 쓰기를 모두 되돌린다"""


class EventStore(TransactionalStore):
    """이벤트 저장소"""

    @abstractmethod
    def get_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> Optional[Event]:
        ...

    @abstractmethod
    def create_event(self, tenant_id: str, event: Event, timeout: Optional[float] = None) -> Event:
        ...

    @abstractmethod
    def update_event(
        self,
        tenant_id: str,
        event: Event,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Event:
        ...

    @abstractmethod
    def delete_event(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> bool:
        ...

    @abstractmethod
    def list_occurrences(
        self,
        tenant_id: str,
        master_event_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        """마스터의 회차 목록 (시작 시간순). start/end는 회차 시작 시간 기준 [start, end)"""

    @abstractmethod
    def list_masters(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        ...

    @abstractmethod
    def list_events(self, tenant_id: str, timeout: Optional[float] = None) -> List[Event]:
        ...

    @abstractmethod
    def list_facility_events(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        """시설에 배정된 이벤트 중 [start, end)와 겹치는 것"""


class RegistrationStore(TransactionalStore):
    """등록 저장소"""

    @abstractmethod
    def get_registration(
        self, tenant_id: str, registration_id: str, timeout: Optional[float] = None
    ) -> Optional[EventRegistration]:
        ...

    @abstractmethod
    def list_registrations(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        """이벤트의 등록 목록 (등록 시간순)"""

    @abstractmethod
    def list_member_registrations(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[EventRegistration]:
        """회원의 등록 목록 (등록 시간순)"""

    @abstractmethod
    def create_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        ...

    @abstractmethod
    def update_registration(
        self, tenant_id: str, registration: EventRegistration, timeout: Optional[float] = None
    ) -> EventRegistration:
        ...


class FacilityStore(TransactionalStore):
    """시설/예약 저장소"""

    @abstractmethod
    def get_facility(self, tenant_id: str, facility_id: str, timeout: Optional[float] = None) -> Optional[Facility]:
        ...

    @abstractmethod
    def get_booking(
        self, tenant_id: str, booking_id: str, timeout: Optional[float] = None
    ) -> Optional[FacilityBooking]:
        ...

    @abstractmethod
    def list_bookings(
        self,
        tenant_id: str,
        facility_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        """시설 예약 중 [start, end)와 겹치는 것 (상태 무관)"""

    @abstractmethod
    def list_member_bookings(
        self,
        tenant_id: str,
        member_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        """회원 예약 중 [start, end)와 겹치는 것 (상태 무관)"""

    @abstractmethod
    def list_recurring_bookings(
        self,
        tenant_id: str,
        member_id: str,
        recurrence_group_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[FacilityBooking]:
        """회원의 반복 예약 (그룹 지정 시 해당 그룹만), 시작 시각 순"""

    @abstractmethod
    def create_booking(
        self, tenant_id: str, booking: FacilityBooking, timeout: Optional[float] = None
    ) -> FacilityBooking:
        ...

    @abstractmethod
    def update_booking(
        self,
        tenant_id: str,
        booking: FacilityBooking,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> FacilityBooking:
        ...


class BookingLimitStore(ABC):
    """예약 한도 정책 저장소"""

    @abstractmethod
    def get_member(self, tenant_id: str, member_id: str, timeout: Optional[float] = None) -> Optional[Member]:
        ...

    @abstractmethod
    def list_limits(
        self, tenant_id: str, member_id: str, timeout: Optional[float] = None
    ) -> List[MemberBookingLimit]:
        """회원 전용 정책 + 테넌트 공통 정책 (member_id가 None)"""


class HardwareStore(TransactionalStore):
    """장비 저장소"""

    @abstractmethod
    def get_hardware(self, tenant_id: str, hardware_id: str, timeout: Optional[float] = None) -> Optional[Hardware]:
        ...

    @abstractmethod
    def update_hardware(self, tenant_id: str, hardware: Hardware, timeout: Optional[float] = None) -> Hardware:
        ...

    @abstractmethod
    def list_hardware(
        self, tenant_id: str, hardware_type_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> List[Hardware]:
        ...

    @abstractmethod
    def get_requirement(
        self, tenant_id: str, requirement_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentRequirement]:
        ...

    @abstractmethod
    def list_requirements(
        self, tenant_id: str, event_id: str, timeout: Optional[float] = None
    ) -> List[EventEquipmentRequirement]:
        ...

    @abstractmethod
    def update_requirement(
        self, tenant_id: str, requirement: EventEquipmentRequirement, timeout: Optional[float] = None
    ) -> EventEquipmentRequirement:
        ...

    @abstractmethod
    def get_assignment(
        self, tenant_id: str, assignment_id: str, timeout: Optional[float] = None
    ) -> Optional[EventEquipmentAssignment]:
        ...

    @abstractmethod
    def list_assignments(
        self,
        tenant_id: str,
        hardware_id: Optional[str] = None,
        requirement_id: Optional[str] = None,
        event_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[EventEquipmentAssignment]:
        ...

    @abstractmethod
    def create_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        ...

    @abstractmethod
    def update_assignment(
        self, tenant_id: str, assignment: EventEquipmentAssignment, timeout: Optional[float] = None
    ) -> EventEquipmentAssignment:
        ...
