"""
반복 일정 전개기

반복 패턴 + 기준 시간대 -> 순서가 보장된 유한 회차 시퀀스
저장소에 접근하지 않는 순수 계산 모듈
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import count
from typing import Iterator, List, Optional

from loguru import logger

from .config import get_recurrence_settings
from .errors import GenerationLimitExceeded, ValidationError
from .schemas import RecurrencePattern, RecurrenceType, Weekday


@dataclass(frozen=True)
class OccurrenceSlot:
    """생성된 회차 시간대"""
    start_datetime: datetime
    end_datetime: datetime
    occurrence_number: int   # 시리즈 내 순번 (1부터)


def _clamped(anchor: datetime, year: int, month: int) -> datetime:
    """해당 월에 기준 일자가 없으면 말일로 보정"""
    last_day = calendar.monthrange(year, month)[1]
    return anchor.replace(year=year, month=month, day=min(anchor.day, last_day))


class OccurrenceSequence:
    """
    재시작 가능한 회차 시퀀스

    iter() 할 때마다 처음부터 다시 계산한다.
    """

    def __init__(
        self,
        pattern: RecurrencePattern,
        anchor_start: datetime,
        anchor_end: datetime,
        until: Optional[datetime],
        max_count: Optional[int],
        since: Optional[datetime],
        ceiling: int,
        start_number: Optional[int] = None,
    ):
        self.pattern = pattern
        self.anchor_start = anchor_start
        self.duration = anchor_end - anchor_start
        self.until = until
        self.max_count = max_count
        self.since = since
        self.start_number = start_number
        self.ceiling = ceiling

    def __iter__(self) -> Iterator[OccurrenceSlot]:
        pattern = self.pattern
        ordinal = 0
        emitted = 0

        for start in self._candidates():
            if pattern.end_date and start.date() > pattern.end_date:
                return
            if pattern.max_occurrences and ordinal >= pattern.max_occurrences:
                return
            ordinal += 1

            # since 이전 회차는 순번만 소비 (이미 생성된 구간)
            if self.since is not None and start < self.since:
                continue
            if self.max_count is not None and emitted >= self.max_count:
                return
            if self.until is not None and start > self.until:
                return
            if emitted >= self.ceiling:
                raise GenerationLimitExceeded(
                    f"Recurrence expansion exceeded {self.ceiling} occurrences without reaching an end",
                    {"ceiling": self.ceiling, "pattern": pattern.type.value},
                )

            number = ordinal if self.start_number is None else self.start_number + emitted
            yield OccurrenceSlot(start, start + self.duration, number)
            emitted += 1

    def to_list(self) -> List[OccurrenceSlot]:
        return list(self)

    # ==================== 후보 시각 계산 ====================

    def _candidates(self) -> Iterator[datetime]:
        pattern = self.pattern
        anchor = self.anchor_start
        step = pattern.interval

        if pattern.type == RecurrenceType.none:
            yield anchor
            return

        if pattern.type == RecurrenceType.daily:
            for k in count():
                yield anchor + timedelta(days=k * step)

        elif pattern.type == RecurrenceType.weekly:
            days = sorted({int(d) for d in pattern.days_of_week}) or [anchor.weekday()]
            week_start = anchor - timedelta(days=anchor.weekday())
            for k in count():
                base = week_start + timedelta(weeks=k * step)
                for offset in days:
                    candidate = base + timedelta(days=offset)
                    if candidate.date() < anchor.date():
                        continue
                    yield candidate

        elif pattern.type == RecurrenceType.monthly:
            for k in count():
                months = anchor.month - 1 + k * step
                yield _clamped(anchor, anchor.year + months // 12, months % 12 + 1)

        elif pattern.type == RecurrenceType.yearly:
            for k in count():
                yield _clamped(anchor, anchor.year + k * step, anchor.month)


class RecurrenceExpander:
    """반복 패턴 전개기"""

    def __init__(self, ceiling: Optional[int] = None):
        self.ceiling = ceiling or get_recurrence_settings().max_occurrences_per_generation

    def expand(
        self,
        pattern: RecurrencePattern,
        anchor_start: datetime,
        anchor_end: datetime,
        until: Optional[datetime] = None,
        max_count: Optional[int] = None,
        since: Optional[datetime] = None,
        start_number: Optional[int] = None,
    ) -> OccurrenceSequence:
        """
        회차 시퀀스 생성

        Args:
            pattern: 반복 패턴
            anchor_start / anchor_end: 첫 회차 기준 시간대 (길이 유지)
            until: 호출자 생성 한계 (이 시각 이후 시작 회차는 생성하지 않음)
            max_count: 호출자 생성 개수 한계 (패턴의 max_occurrences와 별개)
            since: 이 시각 이전에 시작하는 회차는 건너뜀 (순번은 유지)
            start_number: 첫 회차 번호 (지정 시 생성 순서대로 연속 부여, 기본은 패턴 내 순번)
        """
        if anchor_end <= anchor_start:
            raise ValidationError("Occurrence end must be after start")
        if max_count is not None and max_count < 0:
            raise ValidationError("max_count must not be negative")

        logger.debug(
            f"반복 전개: {pattern.type.value} x{pattern.interval} "
            f"anchor={anchor_start.isoformat()} until={until} max_count={max_count}"
        )
        return OccurrenceSequence(pattern, anchor_start, anchor_end, until, max_count, since, self.ceiling, start_number)


def weekdays_label(days: List[Weekday]) -> str:
    return ", ".join(d.name.capitalize() for d in sorted(days))


def describe_pattern(pattern: RecurrencePattern) -> str:
    """사람이 읽을 수 있는 반복 설명"""
    unit = {
        RecurrenceType.daily: "day",
        RecurrenceType.weekly: "week",
        RecurrenceType.monthly: "month",
        RecurrenceType.yearly: "year",
    }.get(pattern.type)
    if unit is None:
        return "Does not repeat"

    text = f"Every {unit}" if pattern.interval == 1 else f"Every {pattern.interval} {unit}s"
    if pattern.type == RecurrenceType.weekly and pattern.days_of_week:
        text += f" on {weekdays_label(pattern.days_of_week)}"
    if pattern.max_occurrences:
        text += f", {pattern.max_occurrences} times"
    if pattern.end_date:
        text += f", until {pattern.end_date.isoformat()}"
    return text


def add_months(value: datetime, months: int) -> datetime:
    """월 단위 가감 (말일 보정)"""
    total = value.month - 1 + months
    return _clamped(value, value.year + total // 12, total % 12 + 1)
