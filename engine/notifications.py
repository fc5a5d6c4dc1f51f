"""
스케줄링 알림 발행/구독

회차 생성, 대기자 승격, 반복 일정 변경 등을 알림 담당(외부 협력자)에게 전달하기 위한
프로세스 내 이벤트 시스템. 구독자 실패는 로그만 남기고 엔진 동작에는 영향을 주지 않는다.
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class SchedulingEventType(str, Enum):
    """알림 유형"""
    # 반복 일정
    SERIES_CREATED = "series.created"
    OCCURRENCES_GENERATED = "occurrence.created"
    OCCURRENCE_CANCELLED = "occurrence.cancelled"
    OCCURRENCE_RESCHEDULED = "occurrence.rescheduled"
    OCCURRENCE_UPDATED = "occurrence.updated"
    RECURRENCE_UPDATED = "recurrence.updated"

    # 등록
    REGISTRATION_CONFIRMED = "registration.confirmed"
    REGISTRATION_WAITLISTED = "registration.waitlisted"
    REGISTRATION_PROMOTED = "registration.promoted"
    REGISTRATION_CANCELLED = "registration.cancelled"

    # 시설 예약
    BOOKING_CREATED = "booking.created"
    BOOKING_CANCELLED = "booking.cancelled"

    # 장비
    EQUIPMENT_SHORTAGE = "equipment.shortage"


@dataclass
class SchedulingEvent:
    """알림 이벤트"""
    event_type: SchedulingEventType
    tenant_id: str
    entity_type: str                    # "event", "registration", "booking", "requirement"
    entity_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = "scheduling_engine"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class NotificationPublisher:
    """알림 발행자"""

    def __init__(self, db_client=None, max_log_size: int = 1000):
        self.db = db_client
        self.local_subscribers: Dict[SchedulingEventType, List[Callable]] = defaultdict(list)
        self._event_log: List[SchedulingEvent] = []
        self._max_log_size = max_log_size

    def subscribe(self, event_type: SchedulingEventType, callback: Callable[[SchedulingEvent], None]) -> None:
        """로컬 구독자 등록"""
        self.local_subscribers[event_type].append(callback)
        logger.debug(f"구독 등록: {event_type.value} -> {getattr(callback, '__name__', callback)}")

    def unsubscribe(self, event_type: SchedulingEventType, callback: Callable) -> None:
        if callback in self.local_subscribers[event_type]:
            self.local_subscribers[event_type].remove(callback)

    def publish(self, event: SchedulingEvent) -> None:
        """알림 발행"""
        logger.info(f"📢 {event.event_type.value} - {event.entity_type}:{event.entity_id} (tenant={event.tenant_id})")

        self._event_log.append(event)
        if len(self._event_log) > self._max_log_size:
            self._event_log = self._event_log[-self._max_log_size:]

        # DB에 알림 저장 (선택적)
        if self.db:
            try:
                self.db.table("scheduling_events").insert({
                    "event_type": event.event_type.value,
                    "tenant_id": event.tenant_id,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id,
                    "data": json.loads(json.dumps(event.data, default=str)),
                    "source": event.source,
                    "created_at": event.timestamp.isoformat(),
                }).execute()
            except Exception as e:
                logger.warning(f"알림 DB 저장 실패: {e}")

        for subscriber in self.local_subscribers.get(event.event_type, []):
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"구독자 호출 실패: {e}")

    def emit(
        self,
        event_type: SchedulingEventType,
        tenant_id: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        **data: Any,
    ) -> SchedulingEvent:
        """이벤트 생성 + 발행"""
        event = SchedulingEvent(
            event_type=event_type,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
        )
        self.publish(event)
        return event

    def get_recent_events(
        self,
        event_type: Optional[SchedulingEventType] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SchedulingEvent]:
        """최근 알림 조회"""
        events = self._event_log
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if tenant_id:
            events = [e for e in events if e.tenant_id == tenant_id]
        return events[-limit:]
