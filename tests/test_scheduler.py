"""
Unit tests for the recurrence maintenance scheduler
Tests: maintenance run summary, interval job setup, retry after failure, overlap guard
"""

import asyncio
from datetime import datetime

import pytest

from engine.config import MaintenanceSettings
from engine.errors import SchedulingError
from engine.schemas import EventDraft, RecurrencePattern, RecurrenceType, Weekday
from scheduler.scheduler import RecurrenceMaintenanceScheduler

from conftest import TENANT


class FailingManager:
    """extend_all에서 항상 실패하는 회차 관리자"""

    def __init__(self):
        self.calls = 0

    def extend_all(self, tenant_id, now):
        self.calls += 1
        raise SchedulingError("store unavailable")


@pytest.fixture
def settings():
    return MaintenanceSettings(tenant_ids=[TENANT], interval_minutes=30, error_retry_minutes=10)


def _scheduler(manager, settings, now):
    return RecurrenceMaintenanceScheduler(manager, settings=settings, now_func=lambda: now)


class TestMaintenanceRun:
    """유지보수 실행"""

    def test_run_now_extends_series(self, manager, settings, now):
        manager.create_series(
            TENANT,
            EventDraft(title="Epee Club", start_datetime=datetime(2024, 1, 3, 18), end_datetime=datetime(2024, 1, 3, 20)),
            RecurrencePattern(type=RecurrenceType.weekly, days_of_week=[Weekday.wednesday]),
            window_end=datetime(2024, 1, 31),
            now=now,
        )
        scheduler = _scheduler(manager, settings, now)

        asyncio.run(scheduler.run_now())

        summary = scheduler.get_status()["last_summary"][TENANT]
        assert summary["extended"] == 1
        assert summary["occurrences_created"] == 26
        assert summary["cleaned_up"] == 0
        assert summary["integrity_issues"] == 0

        status = scheduler.get_status()
        assert status["last_run"] == now.isoformat()
        assert status["last_error"] is None
        assert status["is_running"] is False
        assert status["tenants"] == [TENANT]

    def test_run_with_no_series(self, manager, settings, now):
        scheduler = _scheduler(manager, settings, now)
        asyncio.run(scheduler.run_now())
        assert scheduler.get_status()["last_summary"][TENANT]["extended"] == 0


class TestJobs:
    """작업 등록"""

    def test_setup_registers_interval_job(self, manager, settings, now):
        scheduler = _scheduler(manager, settings, now)
        scheduler.setup()

        jobs = scheduler.get_status()["jobs"]
        assert [job["id"] for job in jobs] == ["recurrence_maintenance"]

    def test_failure_schedules_retry(self, settings, now):
        manager = FailingManager()
        scheduler = _scheduler(manager, settings, now)

        asyncio.run(scheduler.run_now())

        status = scheduler.get_status()
        assert status["last_error"] == "store unavailable"
        assert status["last_run"] is None
        assert status["is_running"] is False
        assert "recurrence_maintenance_retry" in [job["id"] for job in status["jobs"]]

    def test_overlapping_run_is_skipped(self, settings, now):
        manager = FailingManager()
        scheduler = _scheduler(manager, settings, now)
        scheduler._is_running = True

        asyncio.run(scheduler.run_now())

        assert manager.calls == 0
        assert scheduler.get_status()["last_error"] is None
