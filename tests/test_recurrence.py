"""
Unit tests for recurrence expansion
Tests: daily/weekly/monthly/yearly expansion, bounds, since/start_number, safety ceiling
"""

import pytest
from datetime import date, datetime

from engine.errors import GenerationLimitExceeded, ValidationError
from engine.recurrence import RecurrenceExpander, add_months, describe_pattern
from engine.schemas import RecurrencePattern, RecurrenceType, Weekday


@pytest.fixture
def expander():
    return RecurrenceExpander(ceiling=500)


class TestWeeklyExpansion:
    """주간 반복"""

    def test_tuesday_thursday_four_times(self, expander):
        """화/목 주간 반복, 최대 4회"""
        pattern = RecurrencePattern(
            type=RecurrenceType.weekly,
            days_of_week=[Weekday.tuesday, Weekday.thursday],
            max_occurrences=4,
        )
        slots = expander.expand(pattern, datetime(2024, 1, 2, 9, 0), datetime(2024, 1, 2, 10, 0)).to_list()

        assert [s.start_datetime for s in slots] == [
            datetime(2024, 1, 2, 9, 0),
            datetime(2024, 1, 4, 9, 0),
            datetime(2024, 1, 9, 9, 0),
            datetime(2024, 1, 11, 9, 0),
        ]
        assert all(s.end_datetime - s.start_datetime == (datetime(2024, 1, 2, 10) - datetime(2024, 1, 2, 9))
                   for s in slots)
        assert [s.occurrence_number for s in slots] == [1, 2, 3, 4]

    def test_days_before_anchor_in_first_week_are_skipped(self, expander):
        """기준일(목) 이전 요일(월)은 첫 주에 생성하지 않음"""
        pattern = RecurrencePattern(
            type=RecurrenceType.weekly,
            days_of_week=[Weekday.monday, Weekday.thursday],
            max_occurrences=3,
        )
        slots = expander.expand(pattern, datetime(2024, 1, 4, 9), datetime(2024, 1, 4, 10)).to_list()
        assert [s.start_datetime.date() for s in slots] == [
            date(2024, 1, 4), date(2024, 1, 8), date(2024, 1, 11),
        ]

    def test_every_other_week(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.weekly, interval=2, max_occurrences=3)
        slots = expander.expand(pattern, datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 10)).to_list()
        assert [s.start_datetime.date() for s in slots] == [
            date(2024, 1, 2), date(2024, 1, 16), date(2024, 1, 30),
        ]

    def test_days_of_week_only_for_weekly(self):
        with pytest.raises(ValueError):
            RecurrencePattern(type=RecurrenceType.daily, days_of_week=[Weekday.monday])


class TestCalendarExpansion:
    """일/월/년 반복"""

    def test_daily_with_end_date_inclusive(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily, interval=2, end_date=date(2024, 1, 7))
        slots = expander.expand(pattern, datetime(2024, 1, 1, 7), datetime(2024, 1, 1, 8)).to_list()
        assert [s.start_datetime.day for s in slots] == [1, 3, 5, 7]

    def test_monthly_clamps_to_last_day(self, expander):
        """31일 기준 월간 반복은 짧은 달에서 말일로 보정"""
        pattern = RecurrencePattern(type=RecurrenceType.monthly, max_occurrences=4)
        slots = expander.expand(pattern, datetime(2024, 1, 31, 9), datetime(2024, 1, 31, 10)).to_list()
        assert [s.start_datetime.date() for s in slots] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30),
        ]

    def test_yearly_leap_day(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.yearly, max_occurrences=2)
        slots = expander.expand(pattern, datetime(2024, 2, 29, 9), datetime(2024, 2, 29, 10)).to_list()
        assert [s.start_datetime.date() for s in slots] == [date(2024, 2, 29), date(2025, 2, 28)]

    def test_none_yields_anchor_only(self, expander):
        slots = expander.expand(RecurrencePattern(), datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10)).to_list()
        assert len(slots) == 1
        assert slots[0].occurrence_number == 1


class TestExpansionBounds:
    """호출자 한계와 재시작"""

    def test_until_is_inclusive(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        slots = expander.expand(
            pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), until=datetime(2024, 1, 3, 9)
        ).to_list()
        assert len(slots) == 3

    def test_max_count_limits_output(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        slots = expander.expand(pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), max_count=5).to_list()
        assert len(slots) == 5

    def test_max_count_zero_is_empty(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        assert expander.expand(pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10), max_count=0).to_list() == []

    def test_since_keeps_pattern_numbering(self, expander):
        """since 이전 회차는 건너뛰지만 순번은 패턴 기준 유지"""
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        slots = expander.expand(
            pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10),
            since=datetime(2024, 1, 4, 0), max_count=2,
        ).to_list()
        assert [s.start_datetime.day for s in slots] == [4, 5]
        assert [s.occurrence_number for s in slots] == [4, 5]

    def test_start_number_renumbers_consecutively(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        slots = expander.expand(
            pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10),
            since=datetime(2024, 1, 4, 0), max_count=3, start_number=10,
        ).to_list()
        assert [s.occurrence_number for s in slots] == [10, 11, 12]

    def test_sequence_is_restartable(self, expander):
        pattern = RecurrencePattern(type=RecurrenceType.daily, max_occurrences=3)
        sequence = expander.expand(pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10))
        assert sequence.to_list() == sequence.to_list()

    def test_unbounded_pattern_hits_ceiling(self):
        """종료 조건 없는 전개는 안전 상한에서 중단"""
        expander = RecurrenceExpander(ceiling=10)
        pattern = RecurrencePattern(type=RecurrenceType.daily)
        with pytest.raises(GenerationLimitExceeded):
            expander.expand(pattern, datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 10)).to_list()

    def test_invalid_anchor_window(self, expander):
        with pytest.raises(ValidationError):
            expander.expand(RecurrencePattern(), datetime(2024, 1, 1, 10), datetime(2024, 1, 1, 9))


class TestHelpers:
    def test_add_months_clamps(self):
        assert add_months(datetime(2024, 1, 31, 9), 1) == datetime(2024, 2, 29, 9)
        assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)
        assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)

    def test_describe_pattern(self):
        pattern = RecurrencePattern(
            type=RecurrenceType.weekly,
            days_of_week=[Weekday.thursday, Weekday.tuesday],
            max_occurrences=4,
        )
        assert describe_pattern(pattern) == "Every week on Tuesday, Thursday, 4 times"
        assert describe_pattern(RecurrencePattern()) == "Does not repeat"
        assert describe_pattern(RecurrencePattern(type=RecurrenceType.monthly, interval=2)) == "Every 2 months"
