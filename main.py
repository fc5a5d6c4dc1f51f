"""
클럽 스케줄링 엔진 메인
"""
import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from loguru import logger

from database.supabase_store import SupabaseStore
from engine import (
    BookingConflictResolver,
    BookingLimitEnforcer,
    EquipmentAllocator,
    EventOccurrenceManager,
    FacilityBookingService,
    NotificationPublisher,
    RegistrationLedger,
)
from engine.config import get_maintenance_settings
from scheduler.scheduler import RecurrenceMaintenanceScheduler


# 로깅 설정
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level="INFO"
)
logger.add(
    "logs/scheduling_{time:YYYY-MM-DD}.log",
    rotation="1 day",
    retention="7 days",
    level="DEBUG"
)


@dataclass
class SchedulingServices:
    """엔진 구성 요소 묶음"""
    store: SupabaseStore
    publisher: NotificationPublisher
    allocator: EquipmentAllocator
    ledger: RegistrationLedger
    resolver: BookingConflictResolver
    enforcer: BookingLimitEnforcer
    manager: EventOccurrenceManager
    bookings: FacilityBookingService


def build_services(store: Optional[SupabaseStore] = None) -> SchedulingServices:
    """저장소 하나를 공유하는 엔진 구성 요소 생성"""
    store = store or SupabaseStore()
    publisher = NotificationPublisher(db_client=store.supabase)
    allocator = EquipmentAllocator(store, events=store, publisher=publisher)
    ledger = RegistrationLedger(store, store, allocator=allocator, publisher=publisher)
    resolver = BookingConflictResolver(store, events=store)
    enforcer = BookingLimitEnforcer(store, store)
    manager = EventOccurrenceManager(store, store, ledger=ledger, resolver=resolver, publisher=publisher)
    bookings = FacilityBookingService(
        store, store, events=store, resolver=resolver, enforcer=enforcer, publisher=publisher
    )
    logger.info("스케줄링 엔진 초기화 완료")
    return SchedulingServices(
        store=store,
        publisher=publisher,
        allocator=allocator,
        ledger=ledger,
        resolver=resolver,
        enforcer=enforcer,
        manager=manager,
        bookings=bookings,
    )


async def main():
    """메인 함수"""
    import argparse

    parser = argparse.ArgumentParser(description="클럽 스케줄링 엔진")
    parser.add_argument(
        "--mode",
        choices=["maintain", "integrity", "scheduler"],
        default="maintain",
        help="실행 모드"
    )
    parser.add_argument(
        "--tenant",
        action="append",
        default=[],
        help="대상 테넌트 ID (여러 번 지정 가능, 기본: MAINTENANCE_TENANT_IDS)"
    )

    args = parser.parse_args()

    settings = get_maintenance_settings()
    if args.tenant:
        settings = settings.model_copy(update={"tenant_ids": args.tenant})
    if not settings.tenant_ids:
        logger.error("대상 테넌트가 없습니다 (--tenant 또는 MAINTENANCE_TENANT_IDS)")
        sys.exit(1)

    services = build_services()
    scheduler = RecurrenceMaintenanceScheduler(services.manager, settings=settings)

    if args.mode == "maintain":
        # 단일 유지보수 실행
        await scheduler.run_now()
        if scheduler.get_status()["last_error"]:
            sys.exit(1)

    elif args.mode == "integrity":
        # 무결성 검사만 실행
        has_issues = False
        for tenant_id in settings.tenant_ids:
            report = services.manager.validate_integrity(tenant_id, datetime.now())
            print(f"\n=== {tenant_id} 무결성 검사 ===")
            if report.is_valid:
                print("  문제 없음")
            for issue in report.issues:
                has_issues = True
                print(f"  - {issue}")
        if has_issues:
            sys.exit(1)

    elif args.mode == "scheduler":
        # 스케줄러 모드
        scheduler.start()
        await scheduler.run_now()

        logger.info("스케줄러 모드로 실행 중... (Ctrl+C로 종료)")

        try:
            # 무한 대기
            while True:
                await asyncio.sleep(60)
                status = scheduler.get_status()
                logger.debug(f"스케줄러 상태: {status}")
        except (KeyboardInterrupt, asyncio.CancelledError):
            scheduler.stop()
            logger.info("스케줄러 종료됨")


if __name__ == "__main__":
    asyncio.run(main())
