"""
스케줄링 엔진 예외 정의

모든 예외는 SchedulingError를 상속하며 message / details를 가진다.
검증/충돌 오류는 호출자에게 그대로 전달되고, 일괄 작업은 결과 객체로 보고한다.
"""

from typing import Any, Dict, List, Optional


class SchedulingError(Exception):
    """스케줄링 엔진 기본 예외"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SchedulingError):
    """잘못된 입력"""


class NotFoundError(SchedulingError):
    """대상 없음 (다른 테넌트의 데이터도 여기에 해당)"""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


# ==================== 충돌 ====================

class ConflictError(SchedulingError):
    """정원 초과, 시간 겹침 등 상태 충돌"""


class AlreadyRegistered(ConflictError):
    """이미 등록된 회원"""


class EventFull(ConflictError):
    """정원 마감 + 대기자 불허"""


class BookingConflictError(ConflictError):
    """시설 예약 충돌"""

    def __init__(self, message: str, conflicts: Optional[List[Any]] = None):
        super().__init__(message, {"conflicts": [str(c) for c in conflicts or []]})
        self.conflicts = list(conflicts or [])


class ConcurrencyConflict(ConflictError):
    """낙관적 동시성 버전 불일치 - 재조회 후 재검증 필요"""


class LockTimeout(ConflictError):
    """리소스 잠금 대기 시간 초과"""


# ==================== 상태/정책 ====================

class RegistrationClosed(SchedulingError):
    """등록 마감 또는 등록 불가 상태의 이벤트"""


class CheckInClosed(SchedulingError):
    """체크인 가능 시간대가 아님"""


class LimitExceeded(SchedulingError):
    """회원 이용 한도 위반 - 위반 항목 전체를 포함"""

    def __init__(self, violations: List[str], details: Optional[Dict[str, Any]] = None):
        message = "; ".join(violations) if violations else "Booking limit exceeded"
        super().__init__(message, details)
        self.violations = list(violations)


class GenerationLimitExceeded(SchedulingError):
    """반복 일정 생성이 안전 상한에 도달"""


class PartialFailure(SchedulingError):
    """일괄 작업 중 일부 항목 실패"""

    def __init__(self, message: str, item_errors: Optional[Dict[str, str]] = None):
        super().__init__(message, {"item_errors": dict(item_errors or {})})
        self.item_errors = dict(item_errors or {})
