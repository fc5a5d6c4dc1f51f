"""
반복 일정 유지보수 스케줄러
"""
import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from engine.config import MaintenanceSettings, get_maintenance_settings
from engine.errors import SchedulingError
from engine.occurrences import EventOccurrenceManager


class RecurrenceMaintenanceScheduler:
    """반복 시리즈 롤링 연장 / 정리 / 무결성 검사 스케줄러"""

    def __init__(
        self,
        manager: EventOccurrenceManager,
        settings: Optional[MaintenanceSettings] = None,
        now_func: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            manager: 회차 관리자
            settings: 유지보수 설정 (기본: 환경변수)
            now_func: 현재 시각 함수 (테스트에서 고정 시각 주입)
        """
        self.scheduler = AsyncIOScheduler()
        self.manager = manager
        self.settings = settings or get_maintenance_settings()
        self.now_func = now_func
        self._is_running = False
        self._last_run: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_summary: Dict[str, dict] = {}

    @property
    def tenant_ids(self) -> List[str]:
        return list(self.settings.tenant_ids)

    def setup(self):
        """스케줄러 설정"""
        self.scheduler.add_job(
            self._run_maintenance,
            IntervalTrigger(minutes=self.settings.interval_minutes),
            id="recurrence_maintenance",
            name="Recurrence Maintenance",
            replace_existing=True
        )
        logger.info(f"반복 일정 유지보수 스케줄 등록 ({self.settings.interval_minutes}분 간격)")

    def _maintain_tenant(self, tenant_id: str, now: datetime) -> dict:
        """테넌트 하나에 대한 유지보수 (동기)"""
        results = self.manager.extend_all(tenant_id, now)
        summary = {
            "extended": sum(1 for r in results if r.skipped_reason is None),
            "occurrences_created": sum(r.created for r in results),
            "cleaned_up": 0,
            "integrity_issues": 0,
        }

        if self.settings.enable_cleanup:
            summary["cleaned_up"] = self.manager.cleanup_old_occurrences(tenant_id, now)

        if self.settings.enable_integrity_check:
            report = self.manager.validate_integrity(tenant_id, now)
            summary["integrity_issues"] = len(report.issues)

        return summary

    async def _run_maintenance(self):
        """유지보수 실행"""
        if self._is_running:
            logger.warning("이미 유지보수가 진행 중입니다")
            return

        self._is_running = True
        now = self.now_func()
        logger.info(f"=== 반복 일정 유지보수 시작 (테넌트 {len(self.tenant_ids)}개) ===")

        try:
            for tenant_id in self.tenant_ids:
                summary = await asyncio.to_thread(self._maintain_tenant, tenant_id, now)
                self._last_summary[tenant_id] = summary
                logger.info(
                    f"[{tenant_id}] 연장 {summary['extended']}건, 생성 {summary['occurrences_created']}건, "
                    f"정리 {summary['cleaned_up']}건, 무결성 문제 {summary['integrity_issues']}건"
                )
            self._last_run = now
            self._last_error = None
            logger.info(f"유지보수 완료: {self._last_run}")
        except SchedulingError as e:
            self._last_error = e.message
            logger.error(f"유지보수 오류: {e.message}")
            self._schedule_retry(now)
        except Exception as e:
            self._last_error = str(e)
            logger.error(f"유지보수 오류: {e}")
            self._schedule_retry(now)
        finally:
            self._is_running = False

    def _schedule_retry(self, now: datetime):
        """오류 후 일회성 재시도 등록"""
        run_at = now + timedelta(minutes=self.settings.error_retry_minutes)
        self.scheduler.add_job(
            self._run_maintenance,
            DateTrigger(run_date=run_at),
            id="recurrence_maintenance_retry",
            name="Recurrence Maintenance Retry",
            replace_existing=True
        )
        logger.info(f"{self.settings.error_retry_minutes}분 후 유지보수 재시도 예약 ({run_at})")

    def start(self):
        """스케줄러 시작"""
        self.setup()
        self.scheduler.start()
        logger.info("스케줄러 시작됨")

    def stop(self):
        """스케줄러 중지"""
        self.scheduler.shutdown()
        logger.info("스케줄러 중지됨")

    def get_status(self) -> dict:
        """스케줄러 상태 조회"""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None
            })

        return {
            "is_running": self._is_running,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_error": self._last_error,
            "tenants": self.tenant_ids,
            "last_summary": self._last_summary,
            "jobs": jobs
        }

    async def run_now(self):
        """즉시 실행"""
        await self._run_maintenance()
