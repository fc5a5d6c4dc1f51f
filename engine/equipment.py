"""
이벤트 장비 배정

- 자동 배정: 조건에 맞는 가용 장비를 필요 수량만큼 탐욕적으로 예약 (부족해도 실패하지 않음)
- 일괄 수동 배정: auto_resolve_conflicts=True면 충돌 항목을 건너뛰고 다른 후보로 채움,
  False면 전체를 먼저 검증하고 하나라도 문제가 있으면 아무것도 배정하지 않음
- 시간 겹침 판정은 시설 예약과 동일한 열린 구간 규칙
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .config import LedgerSettings, get_ledger_settings
from .errors import ConflictError, NotFoundError, PartialFailure, ValidationError
from .locks import KeyedLockRegistry, default_locks, equipment_key
from .notifications import NotificationPublisher, SchedulingEventType
from .schemas import (
    AssignmentResult,
    AssignmentStatus,
    AutoAssignResult,
    Event,
    EventEquipmentAssignment,
    EventEquipmentRequirement,
    EquipmentSummary,
    Hardware,
    HardwareCondition,
    HardwareStatus,
    overlaps,
)
from .stores import EventStore, HardwareStore
from .transitions import ensure_transition


def _requirement_label(requirement: EventEquipmentRequirement) -> str:
    return requirement.description or requirement.hardware_type_id or requirement.specific_hardware_id or requirement.id


class EquipmentAllocator:
    """이벤트 장비 배정기"""

    def __init__(
        self,
        hardware: HardwareStore,
        events: Optional[EventStore] = None,
        publisher: Optional[NotificationPublisher] = None,
        locks: Optional[KeyedLockRegistry] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self.hardware = hardware
        self.events = events
        self.publisher = publisher
        self.locks = locks or default_locks
        self.settings = settings or get_ledger_settings()

    # =============================================
    # 조회 유틸
    # =============================================

    def _get_event(self, tenant_id: str, event_id: str, timeout: Optional[float]) -> Event:
        if self.events is None:
            raise ValidationError("Event store is not configured for equipment allocation")
        event = self.events.get_event(tenant_id, event_id, timeout=timeout)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    def _get_requirement(
        self, tenant_id: str, event_id: str, requirement_id: str, timeout: Optional[float]
    ) -> EventEquipmentRequirement:
        requirement = self.hardware.get_requirement(tenant_id, requirement_id, timeout=timeout)
        if requirement is None or requirement.event_id != event_id:
            raise NotFoundError("EventEquipmentRequirement", requirement_id)
        return requirement

    def _active_assignments(
        self, tenant_id: str, requirement_id: str, timeout: Optional[float]
    ) -> List[EventEquipmentAssignment]:
        return [
            a for a in self.hardware.list_assignments(tenant_id, requirement_id=requirement_id, timeout=timeout)
            if a.is_active
        ]

    def is_hardware_free(
        self,
        tenant_id: str,
        hardware_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> bool:
        """해당 시간대에 겹치는 활성 배정이 없으면 True"""
        return not any(
            a.is_active and overlaps(a.window_start, a.window_end, start, end)
            for a in self.hardware.list_assignments(tenant_id, hardware_id=hardware_id, timeout=timeout)
        )

    def _problem(
        self,
        tenant_id: str,
        requirement: EventEquipmentRequirement,
        hardware: Optional[Hardware],
        hardware_id: str,
        start: datetime,
        end: datetime,
        assigned_ids: List[str],
        timeout: Optional[float],
    ) -> Optional[str]:
        """배정 불가 사유 (문제가 없으면 None)"""
        if hardware is None:
            return "Hardware not found"
        if requirement.specific_hardware_id and hardware.id != requirement.specific_hardware_id:
            return "Requirement asks for a specific item"
        if requirement.hardware_type_id and hardware.hardware_type_id != requirement.hardware_type_id:
            return "Hardware type does not match requirement"
        if hardware.status != HardwareStatus.available:
            return f"Hardware is {hardware.status.value}"
        if requirement.minimum_condition and hardware.condition < requirement.minimum_condition:
            return f"Hardware condition {hardware.condition.name} is below {requirement.minimum_condition.name}"
        if hardware_id in assigned_ids:
            return "Hardware already assigned to this requirement"
        if not self.is_hardware_free(tenant_id, hardware_id, start, end, timeout):
            return "Hardware is assigned to an overlapping event"
        return None

    def _candidates(
        self,
        tenant_id: str,
        requirement: EventEquipmentRequirement,
        start: datetime,
        end: datetime,
        exclude: List[str],
        timeout: Optional[float],
    ) -> List[Hardware]:
        """배정 가능한 후보 (컨디션 좋은 순)"""
        if requirement.specific_hardware_id:
            item = self.hardware.get_hardware(tenant_id, requirement.specific_hardware_id, timeout=timeout)
            pool = [item] if item else []
        else:
            pool = self.hardware.list_hardware(tenant_id, requirement.hardware_type_id, timeout=timeout)

        candidates = [
            h for h in pool
            if h.id not in exclude
            and self._problem(tenant_id, requirement, h, h.id, start, end, exclude, timeout) is None
        ]
        return sorted(candidates, key=lambda h: (-int(h.condition), h.name))

    def _create_assignment(
        self,
        tenant_id: str,
        event: Event,
        requirement: EventEquipmentRequirement,
        hardware_id: str,
        now: datetime,
        member_id: Optional[str],
        notes: Optional[str],
        timeout: Optional[float],
    ) -> EventEquipmentAssignment:
        assignment = EventEquipmentAssignment(
            tenant_id=tenant_id,
            event_id=event.id,
            requirement_id=requirement.id,
            hardware_id=hardware_id,
            member_id=member_id,
            window_start=event.start_datetime,
            window_end=event.end_datetime,
            assigned_at=now,
            notes=notes,
        )
        return self.hardware.create_assignment(tenant_id, assignment, timeout=timeout)

    def _refresh_fulfilled(
        self, tenant_id: str, requirement: EventEquipmentRequirement, timeout: Optional[float]
    ) -> EventEquipmentRequirement:
        active = self._active_assignments(tenant_id, requirement.id, timeout)
        fulfilled = len(active) >= requirement.quantity
        if fulfilled != requirement.is_fulfilled:
            requirement.is_fulfilled = fulfilled
            requirement = self.hardware.update_requirement(tenant_id, requirement, timeout=timeout)
        return requirement

    def _pool_key(
        self, tenant_id: str, requirement: EventEquipmentRequirement, timeout: Optional[float]
    ) -> Tuple:
        """장비 유형 단위 잠금 키 (특정 장비 요구사항도 그 장비의 유형으로 잠근다)"""
        pool = requirement.hardware_type_id
        if pool is None and requirement.specific_hardware_id:
            item = self.hardware.get_hardware(tenant_id, requirement.specific_hardware_id, timeout=timeout)
            pool = item.hardware_type_id if item is not None else requirement.specific_hardware_id
        return equipment_key(tenant_id, pool or requirement.id)

    def _lock_timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.settings.lock_timeout_seconds

    # =============================================
    # 자동 배정
    # =============================================

    def auto_assign(
        self,
        tenant_id: str,
        event: Event,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> AutoAssignResult:
        """
        auto_assign 요구사항 자동 배정

        후보가 부족하면 요구사항은 미충족 상태로 남고 경고/권장사항만 반환한다.
        """
        result = AutoAssignResult(event_id=event.id)
        for requirement in self.hardware.list_requirements(tenant_id, event.id, timeout=timeout):
            if not requirement.auto_assign:
                continue
            with self.locks.hold(self._pool_key(tenant_id, requirement, timeout), timeout=self._lock_timeout(timeout)):
                with self.hardware.transaction(tenant_id, timeout=timeout):
                    outcome = self._auto_assign_requirement(tenant_id, event, requirement, now, timeout)
            result.requirements.append(outcome)
            result.warnings.extend(outcome.warnings)

        if result.total_assigned:
            logger.info(f"장비 자동 배정: event={event.id} {result.total_assigned}개")
        return result

    def _auto_assign_requirement(
        self,
        tenant_id: str,
        event: Event,
        requirement: EventEquipmentRequirement,
        now: datetime,
        timeout: Optional[float],
    ) -> AssignmentResult:
        assigned = [a.hardware_id for a in self._active_assignments(tenant_id, requirement.id, timeout)]
        outcome = AssignmentResult(requirement_id=requirement.id)
        remaining = requirement.quantity - len(assigned)

        if remaining > 0:
            candidates = self._candidates(
                tenant_id, requirement, event.start_datetime, event.end_datetime, assigned, timeout
            )
            for item in candidates[:remaining]:
                self._create_assignment(tenant_id, event, requirement, item.id, now, None, "Auto-assigned", timeout)
                outcome.assigned_hardware_ids.append(item.id)

            shortage = remaining - len(outcome.assigned_hardware_ids)
            if shortage > 0:
                label = _requirement_label(requirement)
                severity = "Mandatory" if requirement.is_mandatory else "Optional"
                outcome.warnings.append(f"{severity} requirement '{label}' is short by {shortage} item(s)")
                outcome.recommendations.append(
                    f"Add or free up {shortage} item(s) for '{label}', or assign substitutes manually"
                )
                if self.publisher:
                    self.publisher.emit(
                        SchedulingEventType.EQUIPMENT_SHORTAGE, tenant_id, "requirement", requirement.id,
                        event_id=event.id, shortage=shortage, mandatory=requirement.is_mandatory,
                    )

        requirement = self._refresh_fulfilled(tenant_id, requirement, timeout)
        outcome.is_fulfilled = requirement.is_fulfilled
        return outcome

    # =============================================
    # 수동 배정
    # =============================================

    def assign_bulk(
        self,
        tenant_id: str,
        event_id: str,
        requirement_id: str,
        hardware_ids: List[str],
        auto_resolve_conflicts: bool,
        now: datetime,
        member_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AssignmentResult:
        """
        여러 장비를 하나의 요구사항에 배정

        Raises:
            PartialFailure: auto_resolve_conflicts=False에서 하나라도 문제가 있을 때 (배정 없음)
        """
        event = self._get_event(tenant_id, event_id, timeout)
        requirement = self._get_requirement(tenant_id, event_id, requirement_id, timeout)

        with self.locks.hold(self._pool_key(tenant_id, requirement, timeout), timeout=self._lock_timeout(timeout)):
            with self.hardware.transaction(tenant_id, timeout=timeout):
                assigned = [a.hardware_id for a in self._active_assignments(tenant_id, requirement.id, timeout)]
                remaining = requirement.quantity - len(assigned)

                errors: Dict[str, str] = {}
                valid: List[str] = []
                for hardware_id in dict.fromkeys(hardware_ids):
                    item = self.hardware.get_hardware(tenant_id, hardware_id, timeout=timeout)
                    problem = self._problem(
                        tenant_id, requirement, item, hardware_id,
                        event.start_datetime, event.end_datetime, assigned, timeout,
                    )
                    if problem:
                        errors[hardware_id] = problem
                    elif len(valid) >= remaining:
                        errors[hardware_id] = "Requirement is already fulfilled"
                    else:
                        valid.append(hardware_id)

                if errors and not auto_resolve_conflicts:
                    logger.warning(f"장비 일괄 배정 거부 (requirement={requirement_id}): {errors}")
                    raise PartialFailure("Equipment batch rejected; no items were assigned", errors)

                outcome = AssignmentResult(requirement_id=requirement.id, skipped=errors)
                for hardware_id in valid:
                    self._create_assignment(tenant_id, event, requirement, hardware_id, now, member_id, None, timeout)
                    outcome.assigned_hardware_ids.append(hardware_id)

                # 건너뛴 만큼 다른 후보로 채움
                shortfall = remaining - len(valid)
                if auto_resolve_conflicts and errors and shortfall > 0:
                    exclude = assigned + valid + list(hardware_ids)
                    backfill = self._candidates(
                        tenant_id, requirement, event.start_datetime, event.end_datetime, exclude, timeout
                    )
                    for item in backfill[:shortfall]:
                        self._create_assignment(
                            tenant_id, event, requirement, item.id, now, member_id, "Backfilled", timeout
                        )
                        outcome.assigned_hardware_ids.append(item.id)

                requirement = self._refresh_fulfilled(tenant_id, requirement, timeout)
                outcome.is_fulfilled = requirement.is_fulfilled

        if outcome.skipped:
            outcome.warnings.append(f"{len(outcome.skipped)} item(s) skipped due to conflicts")
        if not outcome.is_fulfilled:
            outcome.recommendations.append("Requirement is still short; consider auto-assign or other items")

        logger.info(
            f"장비 일괄 배정: requirement={requirement_id} 배정 {len(outcome.assigned_hardware_ids)}, "
            f"건너뜀 {len(outcome.skipped)}"
        )
        return outcome

    def assign_manual(
        self,
        tenant_id: str,
        event_id: str,
        requirement_id: str,
        hardware_id: str,
        now: datetime,
        member_id: Optional[str] = None,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> EventEquipmentAssignment:
        """장비 한 개 수동 배정"""
        event = self._get_event(tenant_id, event_id, timeout)
        requirement = self._get_requirement(tenant_id, event_id, requirement_id, timeout)

        with self.locks.hold(self._pool_key(tenant_id, requirement, timeout), timeout=self._lock_timeout(timeout)):
            with self.hardware.transaction(tenant_id, timeout=timeout):
                assigned = [a.hardware_id for a in self._active_assignments(tenant_id, requirement.id, timeout)]
                if len(assigned) >= requirement.quantity:
                    raise ConflictError("Requirement is already fulfilled", {"requirement_id": requirement_id})

                item = self.hardware.get_hardware(tenant_id, hardware_id, timeout=timeout)
                problem = self._problem(
                    tenant_id, requirement, item, hardware_id,
                    event.start_datetime, event.end_datetime, assigned, timeout,
                )
                if problem:
                    raise ConflictError(problem, {"hardware_id": hardware_id})

                assignment = self._create_assignment(
                    tenant_id, event, requirement, hardware_id, now, member_id, notes, timeout
                )
                self._refresh_fulfilled(tenant_id, requirement, timeout)
        return assignment

    # =============================================
    # 배정 상태 변경
    # =============================================

    def _get_assignment(self, tenant_id: str, assignment_id: str, timeout: Optional[float]) -> EventEquipmentAssignment:
        assignment = self.hardware.get_assignment(tenant_id, assignment_id, timeout=timeout)
        if assignment is None:
            raise NotFoundError("EventEquipmentAssignment", assignment_id)
        return assignment

    def check_out_equipment(
        self,
        tenant_id: str,
        assignment_id: str,
        now: datetime,
        timeout: Optional[float] = None,
    ) -> EventEquipmentAssignment:
        """장비 반출"""
        with self.hardware.transaction(tenant_id, timeout=timeout):
            assignment = self._get_assignment(tenant_id, assignment_id, timeout)
            ensure_transition(assignment.status, AssignmentStatus.checked_out, "assignment")
            assignment.status = AssignmentStatus.checked_out
            assignment.checked_out_at = now

            item = self.hardware.get_hardware(tenant_id, assignment.hardware_id, timeout=timeout)
            if item is not None:
                item.status = HardwareStatus.assigned
                self.hardware.update_hardware(tenant_id, item, timeout=timeout)
            return self.hardware.update_assignment(tenant_id, assignment, timeout=timeout)

    def return_equipment(
        self,
        tenant_id: str,
        assignment_id: str,
        now: datetime,
        condition: Optional[HardwareCondition] = None,
        damaged: bool = False,
        timeout: Optional[float] = None,
    ) -> EventEquipmentAssignment:
        """장비 반납 (파손 시 점검 상태로 전환)"""
        with self.hardware.transaction(tenant_id, timeout=timeout):
            assignment = self._get_assignment(tenant_id, assignment_id, timeout)
            target = AssignmentStatus.damaged if damaged else AssignmentStatus.returned
            ensure_transition(assignment.status, target, "assignment")
            assignment.status = target
            assignment.returned_at = now

            item = self.hardware.get_hardware(tenant_id, assignment.hardware_id, timeout=timeout)
            if item is not None:
                item.status = HardwareStatus.maintenance if damaged else HardwareStatus.available
                if condition is not None:
                    item.condition = condition
                self.hardware.update_hardware(tenant_id, item, timeout=timeout)
            saved = self.hardware.update_assignment(tenant_id, assignment, timeout=timeout)

        logger.info(f"장비 반납: assignment={assignment_id} ({target.value})")
        return saved

    # =============================================
    # 준비 현황
    # =============================================

    def availability_report(
        self,
        tenant_id: str,
        event_id: str,
        timeout: Optional[float] = None,
    ) -> EquipmentSummary:
        """이벤트 장비 준비 현황 (필수 요구사항 미충족은 issue, 선택 요구사항은 warning)"""
        event = self._get_event(tenant_id, event_id, timeout)
        requirements = self.hardware.list_requirements(tenant_id, event_id, timeout=timeout)
        summary = EquipmentSummary(event_id=event_id, total_requirements=len(requirements))

        for requirement in requirements:
            label = _requirement_label(requirement)
            active = self._active_assignments(tenant_id, requirement.id, timeout)
            short = requirement.quantity - len(active)
            if short <= 0:
                summary.fulfilled_requirements += 1
            else:
                message = f"'{label}' has {len(active)}/{requirement.quantity} item(s) assigned"
                if requirement.is_mandatory:
                    summary.issues.append(message)
                else:
                    summary.warnings.append(message)

                available = self._candidates(
                    tenant_id, requirement, event.start_datetime, event.end_datetime,
                    [a.hardware_id for a in active], timeout,
                )
                if len(available) >= short:
                    summary.recommendations.append(
                        f"{len(available)} matching item(s) available for '{label}'; run auto-assign"
                    )
                else:
                    summary.recommendations.append(
                        f"Only {len(available)} matching item(s) available for '{label}'; {short} needed"
                    )

            for assignment in active:
                item = self.hardware.get_hardware(tenant_id, assignment.hardware_id, timeout=timeout)
                if item is None or item.status not in (HardwareStatus.available, HardwareStatus.assigned):
                    status = item.status.value if item else "missing"
                    summary.warnings.append(f"Assigned item {assignment.hardware_id} is {status}")

        summary.ready_for_event = not summary.issues
        return summary
