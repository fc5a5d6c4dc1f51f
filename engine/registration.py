"""
이벤트 등록 원장

이벤트별 정원(current_enrollment)과 대기자 순번의 유일한 기록자.
- 등록/취소/체크인은 (tenant_id, event_id) 잠금 + 저장소 트랜잭션 안에서 수행
- 이벤트 갱신은 버전 검사를 거치며, 충돌 시 최신 상태를 다시 읽어 재검증
- 대기자 순번은 항상 1부터 연속, 등록 순서 유지
"""

from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

from loguru import logger

from .config import LedgerSettings, get_ledger_settings
from .errors import (
    AlreadyRegistered,
    CheckInClosed,
    ConcurrencyConflict,
    EventFull,
    NotFoundError,
    RegistrationClosed,
    SchedulingError,
    ValidationError,
)
from .locks import KeyedLockRegistry, default_locks, event_key
from .notifications import NotificationPublisher, SchedulingEventType
from .schemas import (
    BulkCheckInResult,
    BulkRegistrationItem,
    BulkRegistrationResult,
    CancellationResult,
    Event,
    EventRegistration,
    EventStatus,
    RegistrationStatus,
)
from .stores import EventStore, RegistrationStore
from .transitions import ensure_transition

T = TypeVar("T")

# 등록을 받는 이벤트 상태
OPEN_STATUSES = (EventStatus.scheduled, EventStatus.rescheduled)

# 빈 자리가 생겨도 대기자를 승격하지 않는 상태
CLOSED_STATUSES = (EventStatus.cancelled, EventStatus.completed)


def waitlist_of(registrations: List[EventRegistration]) -> List[EventRegistration]:
    """대기자 목록 (순번, 등록 시간순)"""
    waitlisted = [r for r in registrations if r.status == RegistrationStatus.waitlisted]
    return sorted(waitlisted, key=lambda r: (r.waitlist_position or 0, r.registered_at))


class RegistrationLedger:
    """이벤트 등록 원장"""

    def __init__(
        self,
        events: EventStore,
        registrations: RegistrationStore,
        allocator=None,
        publisher: Optional[NotificationPublisher] = None,
        locks: Optional[KeyedLockRegistry] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        """
        Args:
            events: 이벤트 저장소
            registrations: 등록 저장소
            allocator: EquipmentAllocator (optional) - 확정 등록 시 자동 배정 요구사항 처리
            publisher: 알림 발행자 (optional)
        """
        self.events = events
        self.registrations = registrations
        self.allocator = allocator
        self.publisher = publisher
        self.locks = locks or default_locks
        self.settings = settings or get_ledger_settings()

    # =============================================
    # 내부 유틸
    # =============================================

    @contextmanager
    def _transaction(self, tenant_id: str, timeout: Optional[float]) -> Iterator[None]:
        with ExitStack() as stack:
            seen = set()
            for store in (self.events, self.registrations):
                if id(store) in seen:
                    continue
                seen.add(id(store))
                stack.enter_context(store.transaction(tenant_id, timeout=timeout))
            yield

    def _serialized(
        self,
        tenant_id: str,
        event_id: str,
        operation: Callable[[], T],
        timeout: Optional[float],
    ) -> T:
        """이벤트 잠금 + 트랜잭션 안에서 읽기-검증-쓰기 수행, 버전 충돌 시 재검증"""
        lock_timeout = timeout if timeout is not None else self.settings.lock_timeout_seconds
        with self.locks.hold(event_key(tenant_id, event_id), timeout=lock_timeout):
            attempt = 0
            while True:
                try:
                    with self._transaction(tenant_id, timeout):
                        return operation()
                except ConcurrencyConflict:
                    attempt += 1
                    if attempt > self.settings.max_optimistic_retries:
                        raise
                    logger.warning(f"이벤트 {event_id} 버전 충돌 - 재조회 후 재검증 ({attempt})")

    def _get_event(self, tenant_id: str, event_id: str, timeout: Optional[float]) -> Event:
        event = self.events.get_event(tenant_id, event_id, timeout=timeout)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    def _get_registration(self, tenant_id: str, registration_id: str, timeout: Optional[float]) -> EventRegistration:
        registration = self.registrations.get_registration(tenant_id, registration_id, timeout=timeout)
        if registration is None:
            raise NotFoundError("EventRegistration", registration_id)
        return registration

    def _save_event(self, tenant_id: str, event: Event, now: datetime, timeout: Optional[float]) -> Event:
        expected = event.version
        event.updated_at = now
        return self.events.update_event(tenant_id, event, expected_version=expected, timeout=timeout)

    def _notify(self, event_type: SchedulingEventType, tenant_id: str, entity_id: str, **data) -> None:
        if self.publisher:
            self.publisher.emit(event_type, tenant_id, "registration", entity_id, **data)

    def _check_in_window(self, event: Event) -> Tuple[datetime, datetime]:
        opens = event.start_datetime - timedelta(minutes=self.settings.check_in_opens_minutes_before)
        closes = event.start_datetime + timedelta(minutes=self.settings.check_in_closes_minutes_after)
        return opens, closes

    # =============================================
    # 등록
    # =============================================

    def register(
        self,
        tenant_id: str,
        event_id: str,
        member_id: str,
        now: datetime,
        member_name: Optional[str] = None,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> EventRegistration:
        """
        이벤트 등록

        - 정원 여유가 있으면 확정, 없으면 대기자 등록 (허용 시)
        - 이미 활성 등록이 있으면 AlreadyRegistered
        - 등록 마감이 지났거나 예정/일정 변경 상태가 아니면 RegistrationClosed
        - 정원 마감 + 대기자 불허면 EventFull
        """

        def operation() -> EventRegistration:
            event = self._get_event(tenant_id, event_id, timeout)
            if event.is_recurring_master:
                raise ValidationError("Register for an occurrence, not the recurring master", {"event_id": event_id})

            registrations = self.registrations.list_registrations(tenant_id, event_id, timeout=timeout)
            if any(r.member_id == member_id and r.is_active for r in registrations):
                raise AlreadyRegistered(
                    "Member is already registered for this event",
                    {"event_id": event_id, "member_id": member_id},
                )
            if event.status not in OPEN_STATUSES:
                raise RegistrationClosed(
                    f"Registration is not open for events with status {event.status.value}",
                    {"event_id": event_id, "status": event.status.value},
                )
            if event.registration_deadline and now > event.registration_deadline:
                raise RegistrationClosed("Registration deadline has passed", {"event_id": event_id})

            registration = EventRegistration(
                tenant_id=tenant_id,
                event_id=event_id,
                member_id=member_id,
                member_name=member_name,
                registered_at=now,
                notes=notes,
            )
            if event.current_enrollment < event.max_capacity:
                registration.status = RegistrationStatus.confirmed
                event.current_enrollment += 1
            elif event.allow_waitlist:
                registration.status = RegistrationStatus.waitlisted
                registration.is_waitlisted = True
                registration.waitlist_position = len(waitlist_of(registrations)) + 1
            else:
                raise EventFull("Event is full and waitlist is not allowed", {"event_id": event_id})

            created = self.registrations.create_registration(tenant_id, registration, timeout=timeout)
            # 대기자 등록도 이벤트 버전을 올려 동시 순번 배정을 막는다
            self._save_event(tenant_id, event, now, timeout)
            return created

        registration = self._serialized(tenant_id, event_id, operation, timeout)

        if registration.status == RegistrationStatus.confirmed:
            logger.info(f"등록 확정: event={event_id} member={member_id}")
            self._notify(SchedulingEventType.REGISTRATION_CONFIRMED, tenant_id, registration.id,
                         event_id=event_id, member_id=member_id)
            self._allocate_equipment(tenant_id, event_id, now, timeout)
        else:
            logger.info(f"대기자 등록: event={event_id} member={member_id} 순번={registration.waitlist_position}")
            self._notify(SchedulingEventType.REGISTRATION_WAITLISTED, tenant_id, registration.id,
                         event_id=event_id, member_id=member_id, position=registration.waitlist_position)
        return registration

    def _allocate_equipment(self, tenant_id: str, event_id: str, now: datetime, timeout: Optional[float]) -> None:
        """자동 배정 장비 처리 (소프트 의존성 - 실패해도 등록은 유지)"""
        if self.allocator is None:
            return
        try:
            event = self._get_event(tenant_id, event_id, timeout)
            result = self.allocator.auto_assign(tenant_id, event, now, timeout=timeout)
            for warning in result.warnings:
                logger.warning(f"장비 자동 배정 경고 (event={event_id}): {warning}")
        except SchedulingError as e:
            logger.warning(f"장비 자동 배정 실패 (event={event_id}): {e.message}")

    def bulk_register(
        self,
        tenant_id: str,
        event_ids: List[str],
        member_ids: List[str],
        now: datetime,
        timeout: Optional[float] = None,
    ) -> BulkRegistrationResult:
        """여러 이벤트 x 여러 회원 일괄 등록 (개별 실패는 결과에 기록)"""
        result = BulkRegistrationResult()
        for event_id in event_ids:
            for member_id in member_ids:
                try:
                    registration = self.register(tenant_id, event_id, member_id, now, timeout=timeout)
                    result.items.append(BulkRegistrationItem(
                        event_id=event_id,
                        member_id=member_id,
                        success=True,
                        status=registration.status,
                        registration_id=registration.id,
                        waitlist_position=registration.waitlist_position,
                    ))
                    result.successful += 1
                except SchedulingError as e:
                    result.items.append(BulkRegistrationItem(
                        event_id=event_id, member_id=member_id, success=False, error=e.message,
                    ))
                    result.failed += 1

        logger.info(f"일괄 등록 완료: 성공 {result.successful}, 실패 {result.failed}")
        return result

    # =============================================
    # 취소 / 대기자 승격
    # =============================================

    def cancel(
        self,
        tenant_id: str,
        registration_id: str,
        now: datetime,
        enforce_deadline: bool = True,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CancellationResult:
        """
        등록 취소

        확정 등록 취소 시 가장 앞선 대기자를 승격하고 나머지 순번을 1부터 다시 매긴다.
        승격과 순번 재배치는 취소와 같은 트랜잭션에서 처리된다.
        """
        event_id = self._get_registration(tenant_id, registration_id, timeout).event_id

        def operation() -> CancellationResult:
            registration = self._get_registration(tenant_id, registration_id, timeout)
            event = self._get_event(tenant_id, event_id, timeout)
            if enforce_deadline and event.cancellation_deadline and now > event.cancellation_deadline:
                raise RegistrationClosed("Cancellation deadline has passed", {"event_id": event_id})
            return self._cancel_locked(tenant_id, event, registration, now, reason, timeout)

        result = self._serialized(tenant_id, event_id, operation, timeout)

        self._notify(SchedulingEventType.REGISTRATION_CANCELLED, tenant_id, registration_id, event_id=event_id)
        for promoted_id in result.promoted_registration_ids:
            logger.info(f"대기자 승격: event={event_id} registration={promoted_id}")
            self._notify(SchedulingEventType.REGISTRATION_PROMOTED, tenant_id, promoted_id, event_id=event_id)
        if result.promoted_registration_ids:
            self._allocate_equipment(tenant_id, event_id, now, timeout)
        return result

    def _cancel_locked(
        self,
        tenant_id: str,
        event: Event,
        registration: EventRegistration,
        now: datetime,
        reason: Optional[str],
        timeout: Optional[float],
    ) -> CancellationResult:
        previous = registration.status
        ensure_transition(previous, RegistrationStatus.cancelled, "registration")

        registration.status = RegistrationStatus.cancelled
        registration.is_waitlisted = False
        registration.waitlist_position = None
        registration.cancelled_at = now
        if reason:
            registration.notes = reason
        self.registrations.update_registration(tenant_id, registration, timeout=timeout)

        if previous == RegistrationStatus.confirmed:
            event.current_enrollment = max(0, event.current_enrollment - 1)

        promoted = self._promote_and_renumber(tenant_id, event, now, timeout)
        saved = self._save_event(tenant_id, event, now, timeout)

        remaining = waitlist_of(self.registrations.list_registrations(tenant_id, event.id, timeout=timeout))
        logger.info(
            f"등록 취소: event={event.id} registration={registration.id} ({previous.value}) "
            f"정원 {saved.current_enrollment}/{saved.max_capacity}, 대기 {len(remaining)}"
        )
        return CancellationResult(
            registration_id=registration.id,
            previous_status=previous,
            promoted_registration_ids=promoted,
            current_enrollment=saved.current_enrollment,
            waitlist_length=len(remaining),
        )

    def _promote_and_renumber(
        self,
        tenant_id: str,
        event: Event,
        now: datetime,
        timeout: Optional[float],
    ) -> List[str]:
        """빈 자리만큼 대기자 승격 후 남은 대기자 순번을 1부터 연속으로 재배치"""
        waitlist = waitlist_of(self.registrations.list_registrations(tenant_id, event.id, timeout=timeout))
        promoted: List[str] = []

        can_promote = event.status not in CLOSED_STATUSES
        while can_promote and waitlist and event.current_enrollment < event.max_capacity:
            candidate = waitlist.pop(0)
            candidate.status = RegistrationStatus.confirmed
            candidate.is_waitlisted = False
            candidate.waitlist_position = None
            self.registrations.update_registration(tenant_id, candidate, timeout=timeout)
            event.current_enrollment += 1
            promoted.append(candidate.id)

        for position, waiting in enumerate(waitlist, start=1):
            if waiting.waitlist_position != position:
                waiting.waitlist_position = position
                self.registrations.update_registration(tenant_id, waiting, timeout=timeout)
        return promoted

    def promote_waitlist(
        self,
        tenant_id: str,
        event_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> List[str]:
        """정원이 늘어난 경우 등 빈 자리만큼 대기자 승격"""

        def operation() -> List[str]:
            event = self._get_event(tenant_id, event_id, timeout)
            promoted = self._promote_and_renumber(tenant_id, event, now, timeout)
            if promoted:
                self._save_event(tenant_id, event, now, timeout)
            return promoted

        promoted = self._serialized(tenant_id, event_id, operation, timeout)
        for registration_id in promoted:
            self._notify(SchedulingEventType.REGISTRATION_PROMOTED, tenant_id, registration_id, event_id=event_id)
        return promoted

    def cancel_all_for_event(
        self,
        tenant_id: str,
        event_id: str,
        now: datetime,
        reason: Optional[str] = None,
        notify: bool = True,
        timeout: Optional[float] = None,
    ) -> List[EventRegistration]:
        """
        이벤트의 모든 활성 등록 취소 (회차 삭제 시 사용)

        대기자부터 취소하므로 취소 도중 불필요한 승격이 일어나지 않는다.
        취소된 등록 목록을 반환한다.

        바깥 트랜잭션 안에서 호출하는 경우 notify=False로 두고,
        커밋 후 publish_cancellations로 알림을 보낸다.
        """

        def operation() -> List[EventRegistration]:
            event = self._get_event(tenant_id, event_id, timeout)
            registrations = self.registrations.list_registrations(tenant_id, event_id, timeout=timeout)
            active = [r for r in registrations if r.status in (
                RegistrationStatus.waitlisted, RegistrationStatus.pending, RegistrationStatus.confirmed,
            )]
            active.sort(key=lambda r: (r.status == RegistrationStatus.confirmed, -(r.waitlist_position or 0)))
            for registration in active:
                self._cancel_locked(tenant_id, event, registration, now, reason, timeout)
                event = self._get_event(tenant_id, event_id, timeout)
            return active

        cancelled = self._serialized(tenant_id, event_id, operation, timeout)
        if notify:
            self.publish_cancellations(tenant_id, event_id, cancelled, reason)
        return cancelled

    def publish_cancellations(
        self,
        tenant_id: str,
        event_id: str,
        registrations: List[EventRegistration],
        reason: Optional[str] = None,
    ) -> None:
        """커밋된 일괄 취소 알림"""
        for registration in registrations:
            self._notify(SchedulingEventType.REGISTRATION_CANCELLED, tenant_id, registration.id,
                         event_id=event_id, member_id=registration.member_id, reason=reason)

    # =============================================
    # 체크인
    # =============================================

    def check_in(
        self,
        tenant_id: str,
        registration_id: str,
        now: datetime,
        checked_in_by: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> EventRegistration:
        """확정 등록 체크인 (시작 전 60분 ~ 시작 후 30분)"""
        event_id = self._get_registration(tenant_id, registration_id, timeout).event_id

        def operation() -> EventRegistration:
            registration = self._get_registration(tenant_id, registration_id, timeout)
            event = self._get_event(tenant_id, event_id, timeout)
            if registration.status != RegistrationStatus.confirmed:
                raise ValidationError(
                    "Only confirmed registrations can be checked in",
                    {"status": registration.status.value},
                )
            if registration.checked_in_at is not None:
                raise ValidationError("Member is already checked in", {"registration_id": registration_id})

            opens, closes = self._check_in_window(event)
            if not opens <= now <= closes:
                raise CheckInClosed(
                    f"Check-in is open from {opens.isoformat()} to {closes.isoformat()}",
                    {"opens": opens.isoformat(), "closes": closes.isoformat()},
                )

            registration.checked_in_at = now
            registration.checked_in_by = checked_in_by
            registration.no_show = False
            return self.registrations.update_registration(tenant_id, registration, timeout=timeout)

        registration = self._serialized(tenant_id, event_id, operation, timeout)
        logger.info(f"체크인: event={event_id} member={registration.member_id}")
        return registration

    def undo_check_in(
        self,
        tenant_id: str,
        registration_id: str,
        timeout: Optional[float] = None,
    ) -> EventRegistration:
        """체크인 취소"""
        event_id = self._get_registration(tenant_id, registration_id, timeout).event_id

        def operation() -> EventRegistration:
            registration = self._get_registration(tenant_id, registration_id, timeout)
            if registration.checked_in_at is None:
                raise ValidationError("Member is not checked in", {"registration_id": registration_id})
            registration.checked_in_at = None
            registration.checked_in_by = None
            return self.registrations.update_registration(tenant_id, registration, timeout=timeout)

        return self._serialized(tenant_id, event_id, operation, timeout)

    def bulk_check_in(
        self,
        tenant_id: str,
        event_id: str,
        member_ids: List[str],
        now: datetime,
        checked_in_by: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BulkCheckInResult:
        """
        일괄 체크인

        회원별로 성공 / 이미 체크인 / 등록 없음을 분류하며, 개별 실패로 중단하지 않는다.
        """
        self._get_event(tenant_id, event_id, timeout)
        registrations = self.registrations.list_registrations(tenant_id, event_id, timeout=timeout)
        by_member = {r.member_id: r for r in registrations if r.status == RegistrationStatus.confirmed}

        result = BulkCheckInResult(total_requested=len(member_ids))
        for member_id in member_ids:
            registration = by_member.get(member_id)
            if registration is None:
                result.not_found += 1
                result.errors.append(f"{member_id}: no confirmed registration")
                continue
            if registration.checked_in_at is not None:
                result.already_checked_in += 1
                continue
            try:
                self.check_in(tenant_id, registration.id, now, checked_in_by=checked_in_by, timeout=timeout)
                result.successful_check_ins += 1
                result.checked_in_member_ids.append(member_id)
            except SchedulingError as e:
                result.errors.append(f"{member_id}: {e.message}")

        logger.info(
            f"일괄 체크인 event={event_id}: 요청 {result.total_requested}, 성공 {result.successful_check_ins}, "
            f"기존 {result.already_checked_in}, 없음 {result.not_found}, 오류 {len(result.errors) - result.not_found}"
        )
        return result

    def mark_no_shows(
        self,
        tenant_id: str,
        event_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> List[str]:
        """
        체크인 마감 후 미체크인 확정 등록을 노쇼 처리

        노쇼는 확정 인원에서 빠지므로 정원 카운터도 함께 줄인다 (승격은 하지 않음).
        """

        def operation() -> List[str]:
            event = self._get_event(tenant_id, event_id, timeout)
            _, closes = self._check_in_window(event)
            if now <= closes:
                logger.debug(f"체크인 진행 중 - 노쇼 처리 보류: event={event_id}")
                return []

            marked: List[str] = []
            for registration in self.registrations.list_registrations(tenant_id, event_id, timeout=timeout):
                if registration.status != RegistrationStatus.confirmed or registration.checked_in_at:
                    continue
                registration.status = RegistrationStatus.no_show
                registration.no_show = True
                self.registrations.update_registration(tenant_id, registration, timeout=timeout)
                event.current_enrollment = max(0, event.current_enrollment - 1)
                marked.append(registration.id)
            if marked:
                self._save_event(tenant_id, event, now, timeout)
            return marked

        marked = self._serialized(tenant_id, event_id, operation, timeout)
        if marked:
            logger.info(f"노쇼 처리: event={event_id} {len(marked)}명")
        return marked

    # =============================================
    # 조회
    # =============================================

    def get_waitlist(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> List[EventRegistration]:
        self._get_event(tenant_id, event_id, timeout)
        return waitlist_of(self.registrations.list_registrations(tenant_id, event_id, timeout=timeout))

    def get_confirmed(self, tenant_id: str, event_id: str, timeout: Optional[float] = None) -> List[EventRegistration]:
        registrations = self.registrations.list_registrations(tenant_id, event_id, timeout=timeout)
        return [r for r in registrations if r.status == RegistrationStatus.confirmed]

    def get_member_registrations(
        self,
        tenant_id: str,
        member_id: str,
        include_cancelled: bool = False,
        timeout: Optional[float] = None,
    ) -> List[EventRegistration]:
        """회원의 등록 내역 (기본: 취소 제외)"""
        registrations = self.registrations.list_member_registrations(tenant_id, member_id, timeout=timeout)
        if include_cancelled:
            return registrations
        return [r for r in registrations if r.status != RegistrationStatus.cancelled]
