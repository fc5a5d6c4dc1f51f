"""
반복 일정 회차 관리

- 시리즈 생성: 마스터 저장 후 초기 생성 기간(기본 6개월) 만큼 회차 생성
- 롤링 생성: 미래 회차가 최소 유지 기간보다 짧아지면 배치 단위로 연장 (시리즈별 single-flight)
- 반복 패턴 변경: preserve_registrations / force_update / cancel_conflicts 전략
- 개별 회차 수정(취소/일정 변경/내용 수정)은 회차를 시리즈에서 분리(detached)하여 재생성 대상에서 제외
"""

from contextlib import ExitStack, contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from loguru import logger

from .config import RecurrenceSettings, get_recurrence_settings
from .conflicts import BookingConflictResolver
from .errors import (
    BookingConflictError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from .locks import KeyedLockRegistry, default_locks, event_key, series_key
from .notifications import NotificationPublisher, SchedulingEventType
from .properties import PropertySchema, apply_defaults, validate_properties
from .recurrence import OccurrenceSlot, RecurrenceExpander, add_months
from .registration import RegistrationLedger
from .schemas import (
    ConflictingEvent,
    Event,
    EventDraft,
    EventRegistration,
    EventStatus,
    GenerationResult,
    IntegrityReport,
    OccurrenceChanges,
    RecurrencePattern,
    RecurrenceStatus,
    RecurrenceType,
    RegistrationStatus,
    UpdateRecurrenceResult,
    UpdateStrategy,
)
from .stores import EventStore, RegistrationStore
from .transitions import ensure_transition


# 회차로 복사되는 마스터 템플릿 필드
TEMPLATE_FIELDS = (
    "title",
    "description",
    "event_type",
    "facility_id",
    "instructor_id",
    "max_capacity",
    "price",
    "allow_waitlist",
    "required_equipment",
    "custom_fields",
)

# 등록 인원으로 집계하는 상태
HOLDING_STATUSES = (RegistrationStatus.confirmed, RegistrationStatus.pending, RegistrationStatus.waitlisted)

# 커밋 후 보낼 등록 취소 알림 (event_id, 취소된 등록)
PendingCancellations = List[Tuple[str, List[EventRegistration]]]

SERIES_UPDATED_REASON = "Series updated"


def _member_names(registrations: Iterable[EventRegistration]) -> List[str]:
    return [r.member_name or r.member_id for r in registrations]


def _taken_starts(occurrences: Iterable[Event]) -> Set[datetime]:
    """이미 생성된 시각 (분리된 회차는 원래 시각도 포함)"""
    taken: Set[datetime] = set()
    for occurrence in occurrences:
        taken.add(occurrence.start_datetime)
        if occurrence.original_start_datetime is not None:
            taken.add(occurrence.original_start_datetime)
    return taken


class EventOccurrenceManager:
    """반복 일정 회차 관리자"""

    def __init__(
        self,
        events: EventStore,
        registrations: RegistrationStore,
        ledger: Optional[RegistrationLedger] = None,
        resolver: Optional[BookingConflictResolver] = None,
        expander: Optional[RecurrenceExpander] = None,
        publisher: Optional[NotificationPublisher] = None,
        locks: Optional[KeyedLockRegistry] = None,
        settings: Optional[RecurrenceSettings] = None,
        property_schemas: Optional[Dict[str, PropertySchema]] = None,
    ):
        """
        Args:
            events: 이벤트 저장소
            registrations: 등록 저장소
            ledger: 등록 원장 (없으면 같은 저장소로 생성)
            resolver: 시설 충돌 검사기 (optional) - 일정 변경/cancel_conflicts 전략에서 사용
            expander: 반복 전개기
            publisher: 알림 발행자 (optional)
            property_schemas: 테넌트별 이벤트 custom_fields 스키마 (없는 테넌트는 검증 생략)
        """
        self.events = events
        self.registrations = registrations
        self.locks = locks or default_locks
        self.publisher = publisher
        self.ledger = ledger or RegistrationLedger(events, registrations, publisher=publisher, locks=self.locks)
        self.resolver = resolver
        self.expander = expander or RecurrenceExpander()
        self.settings = settings or get_recurrence_settings()
        self.property_schemas = property_schemas or {}
        self.lock_timeout = self.ledger.settings.lock_timeout_seconds

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

    def _notify(self, event_type: SchedulingEventType, tenant_id: str, entity_id: str, **data: Any) -> None:
        if self.publisher:
            self.publisher.emit(event_type, tenant_id, "event", entity_id, **data)

    def _checked_fields(self, tenant_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """테넌트 스키마로 custom_fields 검증 (기본값 채운 결과 반환)"""
        schema = self.property_schemas.get(tenant_id)
        if schema is None:
            return values
        merged = apply_defaults(schema, values)
        result = validate_properties(schema, merged)
        if not result.is_valid:
            raise ValidationError("Invalid custom fields", {"issues": result.messages})
        return merged

    def _checked_draft(self, tenant_id: str, draft: EventDraft) -> EventDraft:
        return draft.model_copy(update={"custom_fields": self._checked_fields(tenant_id, draft.custom_fields)})

    def _get_master(self, tenant_id: str, master_id: str, timeout: Optional[float]) -> Event:
        master = self.events.get_event(tenant_id, master_id, timeout=timeout)
        if master is None or not master.is_recurring_master:
            raise NotFoundError("RecurringMaster", master_id)
        return master

    def _get_occurrence(self, tenant_id: str, occurrence_id: str, timeout: Optional[float]) -> Event:
        occurrence = self.events.get_event(tenant_id, occurrence_id, timeout=timeout)
        if occurrence is None:
            raise NotFoundError("Event", occurrence_id)
        if occurrence.is_recurring_master:
            raise ValidationError("Edit the series, not the master, for recurring changes", {"event_id": occurrence_id})
        return occurrence

    def _holding_registrations(self, tenant_id: str, event_id: str, timeout: Optional[float]) -> List[EventRegistration]:
        return [
            r for r in self.registrations.list_registrations(tenant_id, event_id, timeout=timeout)
            if r.status in HOLDING_STATUSES
        ]

    def _build_occurrence(self, master: Event, slot: OccurrenceSlot, number: int, now: datetime) -> Event:
        fields: Dict[str, Any] = {name: getattr(master, name) for name in TEMPLATE_FIELDS}
        # 마감 시각은 마스터 기준 상대 오프셋으로 옮긴다
        deadlines = {}
        if master.registration_deadline:
            deadlines["registration_deadline"] = slot.start_datetime - (master.start_datetime - master.registration_deadline)
        if master.cancellation_deadline:
            deadlines["cancellation_deadline"] = slot.start_datetime - (master.start_datetime - master.cancellation_deadline)

        return Event(
            tenant_id=master.tenant_id,
            start_datetime=slot.start_datetime,
            end_datetime=slot.end_datetime,
            master_event_id=master.id,
            occurrence_number=number,
            created_at=now,
            updated_at=now,
            **fields,
            **deadlines,
        )

    def _materialize(
        self,
        tenant_id: str,
        master: Event,
        slots: Iterable[OccurrenceSlot],
        taken: Set[datetime],
        now: datetime,
        timeout: Optional[float],
        first_number: Optional[int] = None,
    ) -> GenerationResult:
        """슬롯을 회차로 저장 (이미 생성된 시각은 건너뜀)"""
        result = GenerationResult(master_event_id=master.id)
        for slot in slots:
            if slot.start_datetime in taken:
                result.skipped_existing += 1
                continue
            number = slot.occurrence_number if first_number is None else first_number + result.created
            occurrence = self.events.create_event(
                tenant_id, self._build_occurrence(master, slot, number, now), timeout=timeout
            )
            taken.add(slot.start_datetime)
            result.created += 1
            result.occurrence_ids.append(occurrence.id)
        return result

    def _save_master(self, tenant_id: str, master: Event, now: datetime, timeout: Optional[float]) -> Event:
        master.updated_at = now
        return self.events.update_event(tenant_id, master, expected_version=master.version, timeout=timeout)

    @staticmethod
    def _next_number(occurrences: Iterable[Event]) -> int:
        return max((o.occurrence_number or 0 for o in occurrences), default=0) + 1

    # =============================================
    # 시리즈 생성 / 연장
    # =============================================

    def create_series(
        self,
        tenant_id: str,
        draft: EventDraft,
        pattern: RecurrencePattern,
        window_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        반복 시리즈 생성

        마스터를 저장하고 생성 기간 안의 회차를 1번부터 생성한다.
        같은 시작 시각의 회차가 이미 있으면 건너뛴다.
        """
        draft = self._checked_draft(tenant_id, draft)
        now = now or datetime.now(tz=draft.start_datetime.tzinfo)
        window_end = window_end or add_months(now, self.settings.initial_generation_months)

        master = Event(
            tenant_id=tenant_id,
            recurrence=pattern,
            is_recurring_master=True,
            recurrence_status=RecurrenceStatus.active,
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )

        with self._transaction(tenant_id, timeout):
            master = self.events.create_event(tenant_id, master, timeout=timeout)
            with self.locks.hold(series_key(tenant_id, master.id), timeout=self.lock_timeout):
                slots = self.expander.expand(
                    pattern, master.start_datetime, master.end_datetime, until=window_end
                )
                existing = self.events.list_occurrences(tenant_id, master.id, timeout=timeout)
                result = self._materialize(tenant_id, master, slots, _taken_starts(existing), now, timeout)

                master.last_generated_until = window_end
                master = self._save_master(tenant_id, master, now, timeout)

        result.last_generated_until = window_end
        logger.info(f"반복 시리즈 생성: {master.title} ({master.id}) 회차 {result.created}개, ~{window_end:%Y-%m-%d}")
        self._notify(SchedulingEventType.SERIES_CREATED, tenant_id, master.id, title=master.title)
        if result.created:
            self._notify(SchedulingEventType.OCCURRENCES_GENERATED, tenant_id, master.id,
                         count=result.created, until=window_end.isoformat())
        return result

    def extend_generation(
        self,
        tenant_id: str,
        master_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        롤링 생성

        미래 회차 범위(last_generated_until - now)가 최소 유지 기간보다 짧으면
        last_generated_until + 연장 배치 기간까지 새 회차를 만든다.
        같은 시리즈에 대해 이미 실행 중이면 아무것도 하지 않은 결과를 돌려준다.
        """
        with self.locks.try_hold(series_key(tenant_id, master_id)) as acquired:
            if not acquired:
                logger.debug(f"회차 생성 진행 중 - 건너뜀: {master_id}")
                return GenerationResult(master_event_id=master_id, skipped_reason="Generation already in progress")

            master = self._get_master(tenant_id, master_id, timeout)
            if master.recurrence_status != RecurrenceStatus.active:
                status = master.recurrence_status.value if master.recurrence_status else "none"
                logger.debug(f"비활성 시리즈 - 생성 건너뜀: {master_id} ({status})")
                return GenerationResult(
                    master_event_id=master_id,
                    last_generated_until=master.last_generated_until,
                    skipped_reason=f"Series is {status}",
                )
            if master.recurrence is None or master.recurrence.type == RecurrenceType.none:
                return GenerationResult(master_event_id=master_id, skipped_reason="Series does not repeat")

            last = master.last_generated_until or now
            if last >= add_months(now, self.settings.minimum_future_months):
                return GenerationResult(
                    master_event_id=master_id,
                    last_generated_until=last,
                    skipped_reason="Future coverage is sufficient",
                )

            new_until = add_months(last, self.settings.extension_batch_months)
            with self._transaction(tenant_id, timeout):
                existing = self.events.list_occurrences(tenant_id, master_id, timeout=timeout)
                slots = self.expander.expand(
                    master.recurrence, master.start_datetime, master.end_datetime,
                    until=new_until, since=last,
                )
                result = self._materialize(
                    tenant_id, master, slots, _taken_starts(existing), now, timeout,
                    first_number=self._next_number(existing),
                )
                master.last_generated_until = new_until
                self._save_master(tenant_id, master, now, timeout)

        result.last_generated_until = new_until
        if result.created:
            logger.info(f"반복 일정 연장: {master_id} 회차 {result.created}개 추가, ~{new_until:%Y-%m-%d}")
            self._notify(SchedulingEventType.OCCURRENCES_GENERATED, tenant_id, master_id,
                         count=result.created, until=new_until.isoformat())
        else:
            logger.debug(f"반복 일정 연장: {master_id} 새 회차 없음, ~{new_until:%Y-%m-%d}")
        return result

    def extend_all(self, tenant_id: str, now: datetime, timeout: Optional[float] = None) -> List[GenerationResult]:
        """테넌트의 모든 활성 시리즈 연장 (시리즈별 실패는 로그만 남김)"""
        results: List[GenerationResult] = []
        for master in self.events.list_masters(tenant_id, timeout=timeout):
            if master.recurrence_status != RecurrenceStatus.active:
                continue
            try:
                results.append(self.extend_generation(tenant_id, master.id, now, timeout=timeout))
            except SchedulingError as e:
                logger.warning(f"시리즈 연장 실패 ({master.id}): {e.message}")
        return results

    def set_series_status(
        self,
        tenant_id: str,
        master_id: str,
        status: RecurrenceStatus,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> Event:
        """시리즈 상태 변경 (일시 중지 시 기존 회차는 그대로 유지)"""
        with self.locks.hold(series_key(tenant_id, master_id), timeout=self.lock_timeout):
            master = self._get_master(tenant_id, master_id, timeout)
            master.recurrence_status = status
            master = self._save_master(tenant_id, master, now, timeout)
        logger.info(f"시리즈 상태 변경: {master_id} -> {status.value}")
        return master

    # =============================================
    # 반복 패턴 변경
    # =============================================

    def _apply_draft(self, master: Event, draft: Optional[EventDraft], pattern: RecurrencePattern) -> Event:
        if draft is not None:
            for name, value in draft.model_dump().items():
                setattr(master, name, value)
        master.recurrence = pattern
        return master

    def _regeneration_slots(self, master: Event, now: datetime) -> List[OccurrenceSlot]:
        """변경된 패턴의 미래 슬롯 (기존 생성 범위까지)"""
        until = master.last_generated_until or add_months(now, self.settings.initial_generation_months)
        slots = self.expander.expand(
            master.recurrence, master.start_datetime, master.end_datetime, until=until, since=now,
        )
        return [s for s in slots if s.start_datetime > now]

    def _future_occurrences(self, tenant_id: str, master_id: str, now: datetime, timeout: Optional[float]):
        """(재생성 대상 미래 회차, 유지되는 회차)"""
        occurrences = self.events.list_occurrences(tenant_id, master_id, timeout=timeout)
        future = [o for o in occurrences if o.start_datetime > now and not o.is_detached]
        kept = [o for o in occurrences if o.start_datetime <= now or o.is_detached]
        return future, kept

    def _conflicting(self, occurrence: Event, registrations: List[EventRegistration], reason: Optional[str] = None):
        return ConflictingEvent(
            id=occurrence.id,
            title=occurrence.title,
            start_datetime=occurrence.start_datetime,
            registration_count=len(registrations),
            member_names=_member_names(registrations),
            reason=reason,
        )

    def _slot_conflicts(
        self, tenant_id: str, master: Event, slot: OccurrenceSlot, timeout: Optional[float]
    ) -> List[str]:
        if self.resolver is None or not master.facility_id:
            return []
        check = self.resolver.check_resource(
            tenant_id, master.facility_id, slot.start_datetime, slot.end_datetime,
            ignore_series=master.id, timeout=timeout,
        )
        return [str(c) for c in check.conflicts]

    def update_recurrence(
        self,
        tenant_id: str,
        master_id: str,
        new_draft: Optional[EventDraft],
        new_pattern: RecurrencePattern,
        strategy: UpdateStrategy,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> UpdateRecurrenceResult:
        """
        반복 패턴 변경

        과거 회차와 분리된 회차는 어떤 전략에서도 건드리지 않는다.
        force_update는 전부 성공하거나 전부 롤백된다 (실패 시 예외).
        나머지 전략은 회차 단위로 처리하며 개별 실패는 warnings에 기록한다.
        """
        if new_draft is not None:
            new_draft = self._checked_draft(tenant_id, new_draft)
        result = UpdateRecurrenceResult(strategy=strategy)

        with self.locks.hold(series_key(tenant_id, master_id), timeout=self.lock_timeout):
            master = self._get_master(tenant_id, master_id, timeout)
            master = self._apply_draft(master, new_draft, new_pattern)

            if strategy == UpdateStrategy.force_update:
                pending: PendingCancellations = []
                try:
                    with self._transaction(tenant_id, timeout):
                        self._force_update(tenant_id, master, now, result, pending, timeout)
                except SchedulingError as e:
                    logger.error(f"반복 일정 강제 변경 실패 - 롤백: {master_id} ({e.message})")
                    raise
                self._publish_cancellations(tenant_id, pending)
            elif strategy == UpdateStrategy.preserve_registrations:
                self._preserve_registrations(tenant_id, master, now, result, timeout)
            else:
                self._cancel_conflicts(tenant_id, master, now, result, timeout)

        result.message = (
            f"Recurrence pattern updated. Deleted: {result.occurrences_deleted}, "
            f"Created: {result.occurrences_created}, Preserved: {result.occurrences_preserved}, "
            f"Cancelled: {result.occurrences_cancelled}"
        )
        logger.info(
            f"반복 패턴 변경 ({strategy.value}): {master_id} 삭제 {result.occurrences_deleted}, "
            f"생성 {result.occurrences_created}, 유지 {result.occurrences_preserved}, "
            f"취소 {result.occurrences_cancelled}, 영향 등록 {result.registrations_affected}"
        )
        self._notify(
            SchedulingEventType.RECURRENCE_UPDATED, tenant_id, master_id,
            strategy=strategy.value,
            deleted=result.occurrences_deleted,
            created=result.occurrences_created,
            preserved=result.occurrences_preserved,
            cancelled=result.occurrences_cancelled,
            registrations_affected=result.registrations_affected,
        )
        return result

    def _finish_master(self, tenant_id: str, master: Event, now: datetime, timeout: Optional[float]) -> None:
        if master.last_generated_until is None:
            master.last_generated_until = add_months(now, self.settings.initial_generation_months)
        self._save_master(tenant_id, master, now, timeout)

    def _publish_cancellations(self, tenant_id: str, pending: PendingCancellations) -> None:
        for event_id, registrations in pending:
            self.ledger.publish_cancellations(tenant_id, event_id, registrations, SERIES_UPDATED_REASON)

    def _force_update(
        self,
        tenant_id: str,
        master: Event,
        now: datetime,
        result: UpdateRecurrenceResult,
        pending: PendingCancellations,
        timeout: Optional[float],
    ) -> None:
        """전부 삭제 후 재생성. 등록 취소 알림은 pending에 모아 커밋 후 발행한다"""
        future, kept = self._future_occurrences(tenant_id, master.id, now, timeout)

        for occurrence in future:
            cancelled = self.ledger.cancel_all_for_event(
                tenant_id, occurrence.id, now, reason=SERIES_UPDATED_REASON, notify=False, timeout=timeout
            )
            if cancelled:
                pending.append((occurrence.id, cancelled))
                result.registrations_affected += len(cancelled)
                result.conflicting_events.append(self._conflicting(occurrence, cancelled, "Registrations cancelled"))
            self.events.delete_event(tenant_id, occurrence.id, timeout=timeout)
            result.occurrences_deleted += 1

        self._finish_master(tenant_id, master, now, timeout)
        generated = self._materialize(
            tenant_id, master, self._regeneration_slots(master, now), _taken_starts(kept), now, timeout,
            first_number=self._next_number(kept),
        )
        result.occurrences_created = generated.created

        if result.registrations_affected:
            result.warnings.append(
                f"All {result.registrations_affected} registrations were cancelled due to force update"
            )

    def _preserve_registrations(
        self,
        tenant_id: str,
        master: Event,
        now: datetime,
        result: UpdateRecurrenceResult,
        timeout: Optional[float],
    ) -> None:
        future, kept = self._future_occurrences(tenant_id, master.id, now, timeout)
        kept = list(kept)

        for occurrence in future:
            try:
                with self._transaction(tenant_id, timeout):
                    holding = self._holding_registrations(tenant_id, occurrence.id, timeout)
                    if holding:
                        occurrence.diverged_from_series = True
                        occurrence.updated_at = now
                        self.events.update_event(
                            tenant_id, occurrence, expected_version=occurrence.version, timeout=timeout
                        )
                        kept.append(occurrence)
                        result.occurrences_preserved += 1
                        result.conflicting_events.append(
                            self._conflicting(occurrence, holding, "Preserved with registrations")
                        )
                    else:
                        self.events.delete_event(tenant_id, occurrence.id, timeout=timeout)
                        result.occurrences_deleted += 1
            except SchedulingError as e:
                kept.append(occurrence)
                result.warnings.append(f"Occurrence {occurrence.id} could not be updated: {e.message}")

        with self._transaction(tenant_id, timeout):
            self._finish_master(tenant_id, master, now, timeout)
            generated = self._materialize(
                tenant_id, master, self._regeneration_slots(master, now), _taken_starts(kept), now, timeout,
                first_number=self._next_number(kept),
            )
        result.occurrences_created = generated.created

        if result.occurrences_preserved:
            result.warnings.append(
                f"{result.occurrences_preserved} events with registrations were preserved "
                f"and may no longer match the series pattern"
            )

    def _cancel_conflicts(
        self,
        tenant_id: str,
        master: Event,
        now: datetime,
        result: UpdateRecurrenceResult,
        timeout: Optional[float],
    ) -> None:
        """
        k번째 미래 회차를 새 패턴의 k번째 슬롯에 대응시킨다.
        새 슬롯이 시설 충돌이면 기존 회차를 취소 상태로 남기고 슬롯은 만들지 않는다.
        충돌이 없으면 기존 회차를 지우고(등록은 원장으로 취소) 새 슬롯으로 다시 만든다.
        """
        future, kept = self._future_occurrences(tenant_id, master.id, now, timeout)
        taken = _taken_starts(kept)
        slots = [s for s in self._regeneration_slots(master, now) if s.start_datetime not in taken]
        next_number = self._next_number(future + kept)

        with self._transaction(tenant_id, timeout):
            self._finish_master(tenant_id, master, now, timeout)

        for index, occurrence in enumerate(future):
            slot = slots[index] if index < len(slots) else None
            try:
                with self._transaction(tenant_id, timeout):
                    problems = self._slot_conflicts(tenant_id, master, slot, timeout) if slot else []
                    if problems:
                        holding = self._holding_registrations(tenant_id, occurrence.id, timeout)
                        ensure_transition(occurrence.status, EventStatus.cancelled, "event")
                        occurrence.status = EventStatus.cancelled
                        occurrence.updated_at = now
                        self.events.update_event(
                            tenant_id, occurrence, expected_version=occurrence.version, timeout=timeout
                        )
                        result.occurrences_cancelled += 1
                        result.registrations_affected += len(holding)
                        result.conflicting_events.append(self._conflicting(occurrence, holding, "; ".join(problems)))
                        continue

                    cancelled = self.ledger.cancel_all_for_event(
                        tenant_id, occurrence.id, now, reason=SERIES_UPDATED_REASON, notify=False, timeout=timeout
                    )
                    result.registrations_affected += len(cancelled)
                    self.events.delete_event(tenant_id, occurrence.id, timeout=timeout)
                    result.occurrences_deleted += 1
                    if slot is not None:
                        self.events.create_event(
                            tenant_id, self._build_occurrence(master, slot, next_number, now), timeout=timeout
                        )
                        next_number += 1
                        result.occurrences_created += 1
                self._publish_cancellations(tenant_id, [(occurrence.id, cancelled)])
            except SchedulingError as e:
                result.warnings.append(f"Occurrence {occurrence.id} could not be updated: {e.message}")

        # 기존 회차보다 많은 새 슬롯
        for slot in slots[len(future):]:
            try:
                problems = self._slot_conflicts(tenant_id, master, slot, timeout)
                if problems:
                    result.warnings.append(
                        f"Skipped new occurrence at {slot.start_datetime.isoformat()}: {'; '.join(problems)}"
                    )
                    continue
                with self._transaction(tenant_id, timeout):
                    self.events.create_event(
                        tenant_id, self._build_occurrence(master, slot, next_number, now), timeout=timeout
                    )
                next_number += 1
                result.occurrences_created += 1
            except SchedulingError as e:
                result.warnings.append(f"New occurrence at {slot.start_datetime.isoformat()} failed: {e.message}")

        if result.occurrences_cancelled:
            result.warnings.append(f"{result.occurrences_cancelled} events were cancelled due to conflicts")
        if result.registrations_affected:
            result.warnings.append(f"{result.registrations_affected} members will need to re-register")

    def preview_recurrence_update(
        self,
        tenant_id: str,
        master_id: str,
        new_pattern: RecurrencePattern,
        now: datetime,
        new_draft: Optional[EventDraft] = None,
        strategy: UpdateStrategy = UpdateStrategy.preserve_registrations,
        timeout: Optional[float] = None,
    ) -> UpdateRecurrenceResult:
        """변경 영향 미리보기 (저장하지 않음)"""
        master = self._apply_draft(self._get_master(tenant_id, master_id, timeout), new_draft, new_pattern)
        future, kept = self._future_occurrences(tenant_id, master_id, now, timeout)
        slots = self._regeneration_slots(master, now)
        result = UpdateRecurrenceResult(strategy=strategy)

        holding_by_event = {o.id: self._holding_registrations(tenant_id, o.id, timeout) for o in future}
        with_registrations = [o for o in future if holding_by_event[o.id]]
        result.conflicting_events = [self._conflicting(o, holding_by_event[o.id]) for o in with_registrations]

        if strategy == UpdateStrategy.preserve_registrations:
            taken = _taken_starts(kept + with_registrations)
            result.occurrences_preserved = len(with_registrations)
            result.occurrences_deleted = len(future) - len(with_registrations)
            result.occurrences_created = sum(1 for s in slots if s.start_datetime not in taken)
        elif strategy == UpdateStrategy.force_update:
            taken = _taken_starts(kept)
            result.occurrences_deleted = len(future)
            result.occurrences_created = sum(1 for s in slots if s.start_datetime not in taken)
            result.registrations_affected = sum(len(v) for v in holding_by_event.values())
        else:
            taken = _taken_starts(kept)
            slots = [s for s in slots if s.start_datetime not in taken]
            for index, occurrence in enumerate(future):
                slot = slots[index] if index < len(slots) else None
                result.registrations_affected += len(holding_by_event[occurrence.id])
                if slot is not None and self._slot_conflicts(tenant_id, master, slot, timeout):
                    result.occurrences_cancelled += 1
                    continue
                result.occurrences_deleted += 1
                if slot is not None:
                    result.occurrences_created += 1
            for slot in slots[len(future):]:
                if not self._slot_conflicts(tenant_id, master, slot, timeout):
                    result.occurrences_created += 1

        if with_registrations:
            affected = sum(len(holding_by_event[o.id]) for o in with_registrations)
            result.warnings.append(f"{len(with_registrations)} occurrences have registrations")
            result.warnings.append(f"{affected} registrations may be affected")

        result.message = (
            f"Preview: {result.occurrences_deleted} occurrences to delete, "
            f"{result.occurrences_created} to create, {result.occurrences_preserved} to preserve, "
            f"{result.occurrences_cancelled} to cancel"
        )
        return result

    # =============================================
    # 개별 회차 수정
    # =============================================

    def _detach(self, occurrence: Event) -> None:
        if occurrence.original_start_datetime is None:
            occurrence.original_start_datetime = occurrence.start_datetime
        occurrence.is_detached = True

    def _save_occurrence(self, tenant_id: str, occurrence: Event, now: datetime, timeout: Optional[float]) -> Event:
        occurrence.updated_at = now
        return self.events.update_event(tenant_id, occurrence, expected_version=occurrence.version, timeout=timeout)

    def cancel_occurrence(
        self,
        tenant_id: str,
        occurrence_id: str,
        now: datetime,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Event:
        """회차 하나 취소 (시리즈에서 분리)"""
        with self.locks.hold(event_key(tenant_id, occurrence_id), timeout=self.lock_timeout):
            with self._transaction(tenant_id, timeout):
                occurrence = self._get_occurrence(tenant_id, occurrence_id, timeout)
                ensure_transition(occurrence.status, EventStatus.cancelled, "event")
                occurrence.status = EventStatus.cancelled
                self._detach(occurrence)
                occurrence.cancellation_reason = reason
                occurrence = self._save_occurrence(tenant_id, occurrence, now, timeout)

        logger.info(f"회차 취소: {occurrence_id} ({reason or '사유 없음'})")
        self._notify(SchedulingEventType.OCCURRENCE_CANCELLED, tenant_id, occurrence_id,
                     master_event_id=occurrence.master_event_id, reason=reason)
        return occurrence

    def reschedule_occurrence(
        self,
        tenant_id: str,
        occurrence_id: str,
        new_start: datetime,
        new_end: datetime,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> Event:
        """
        회차 하나 일정 변경

        Raises:
            BookingConflictError: 시설이 새 시간대에 사용 불가할 때
        """
        if new_end <= new_start:
            raise ValidationError("End time must be after start time", {"start": new_start, "end": new_end})

        with self.locks.hold(event_key(tenant_id, occurrence_id), timeout=self.lock_timeout):
            with self._transaction(tenant_id, timeout):
                occurrence = self._get_occurrence(tenant_id, occurrence_id, timeout)
                ensure_transition(occurrence.status, EventStatus.rescheduled, "event")

                if occurrence.facility_id and self.resolver is not None:
                    check = self.resolver.check_resource(
                        tenant_id, occurrence.facility_id, new_start, new_end,
                        exclude_event_id=occurrence.id, timeout=timeout,
                    )
                    if not check.is_available:
                        raise BookingConflictError("Facility is not available at the new time", check.conflicts)

                previous_start = occurrence.start_datetime
                self._detach(occurrence)
                occurrence.start_datetime = new_start
                occurrence.end_datetime = new_end
                occurrence.status = EventStatus.rescheduled
                occurrence = self._save_occurrence(tenant_id, occurrence, now, timeout)

        logger.info(f"회차 일정 변경: {occurrence_id} {previous_start:%Y-%m-%d %H:%M} -> {new_start:%Y-%m-%d %H:%M}")
        self._notify(SchedulingEventType.OCCURRENCE_RESCHEDULED, tenant_id, occurrence_id,
                     master_event_id=occurrence.master_event_id,
                     previous_start=previous_start.isoformat(), new_start=new_start.isoformat())
        return occurrence

    def update_single_occurrence(
        self,
        tenant_id: str,
        occurrence_id: str,
        changes: OccurrenceChanges,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> Event:
        """회차 하나 내용 수정 (정원이 늘면 대기자 승격)"""
        updates = changes.model_dump(exclude_unset=True, exclude_none=True)

        with self.locks.hold(event_key(tenant_id, occurrence_id), timeout=self.lock_timeout):
            with self._transaction(tenant_id, timeout):
                occurrence = self._get_occurrence(tenant_id, occurrence_id, timeout)
                previous_capacity = occurrence.max_capacity
                capacity = updates.get("max_capacity")
                if capacity is not None and capacity < occurrence.current_enrollment:
                    raise ValidationError(
                        "Capacity cannot be lower than current enrollment",
                        {"max_capacity": capacity, "current_enrollment": occurrence.current_enrollment},
                    )
                if "custom_fields" in updates:
                    updates["custom_fields"] = self._checked_fields(
                        tenant_id, {**occurrence.custom_fields, **updates["custom_fields"]}
                    )
                for name, value in updates.items():
                    setattr(occurrence, name, value)
                self._detach(occurrence)
                occurrence = self._save_occurrence(tenant_id, occurrence, now, timeout)

        # 이벤트 잠금 해제 후 원장에 위임
        if occurrence.max_capacity > previous_capacity:
            self.ledger.promote_waitlist(tenant_id, occurrence_id, now, timeout=timeout)
            occurrence = self._get_occurrence(tenant_id, occurrence_id, timeout)

        logger.info(f"회차 수정: {occurrence_id} {sorted(updates)}")
        self._notify(SchedulingEventType.OCCURRENCE_UPDATED, tenant_id, occurrence_id,
                     master_event_id=occurrence.master_event_id, fields=sorted(updates))
        return occurrence

    # =============================================
    # 조회 / 정리
    # =============================================

    def get_upcoming_occurrences(
        self,
        tenant_id: str,
        master_id: str,
        now: datetime,
        count: int = 10,
        timeout: Optional[float] = None,
    ) -> List[Event]:
        return self.events.list_occurrences(tenant_id, master_id, start=now, timeout=timeout)[:count]

    def get_occurrence_on(
        self,
        tenant_id: str,
        master_id: str,
        day: date,
        timeout: Optional[float] = None,
    ) -> Optional[Event]:
        for occurrence in self.events.list_occurrences(tenant_id, master_id, timeout=timeout):
            if occurrence.start_datetime.date() == day:
                return occurrence
        return None

    def cleanup_old_occurrences(self, tenant_id: str, now: datetime, timeout: Optional[float] = None) -> int:
        """보관 기간이 지난 완료 회차 삭제"""
        cutoff = add_months(now, -self.settings.history_retention_months)
        stale = [
            e for e in self.events.list_events(tenant_id, timeout=timeout)
            if e.master_event_id is not None
            and e.status == EventStatus.completed
            and e.end_datetime < cutoff
        ]
        with self._transaction(tenant_id, timeout):
            for occurrence in stale:
                self.events.delete_event(tenant_id, occurrence.id, timeout=timeout)

        if stale:
            logger.info(f"오래된 회차 정리: {len(stale)}개 ({cutoff:%Y-%m-%d} 이전)")
        return len(stale)

    def validate_integrity(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> IntegrityReport:
        """반복 일정 무결성 검사"""
        events = self.events.list_events(tenant_id, timeout=timeout)
        ids = {e.id for e in events}
        with_occurrences = {e.master_event_id for e in events if e.master_event_id}

        report = IntegrityReport(checked_at=now or datetime.now())
        for event in events:
            if event.is_recurring_master:
                if event.recurrence_status == RecurrenceStatus.active and event.id not in with_occurrences:
                    report.masters_without_occurrences.append(event.id)
                    report.issues.append(f"Master {event.id} has no occurrences")
                continue
            if event.master_event_id and event.master_event_id not in ids:
                report.orphaned_occurrences.append(event.id)
                report.issues.append(f"Occurrence {event.id} references missing master {event.master_event_id}")
            if event.recurrence is not None:
                report.occurrences_with_pattern.append(event.id)
                report.issues.append(f"Occurrence {event.id} carries a recurrence pattern")

        report.is_valid = not report.issues
        if report.issues:
            logger.warning(f"무결성 검사 문제 {len(report.issues)}건 (tenant={tenant_id})")
        return report
