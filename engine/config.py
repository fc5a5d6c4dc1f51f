"""
스케줄링 엔진 설정
"""
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

load_dotenv()


class RecurrenceSettings(BaseSettings):
    """반복 일정 생성 설정"""

    initial_generation_months: int = Field(default=6, description="시리즈 생성 시 최초 생성 기간 (개월)")
    minimum_future_months: int = Field(default=3, description="미래 일정 최소 유지 기간 (개월)")
    extension_batch_months: int = Field(default=6, description="연장 시 추가 생성 기간 (개월)")
    max_occurrences_per_generation: int = Field(default=500, description="1회 생성 안전 상한")
    history_retention_months: int = Field(default=12, description="완료된 일정 보관 기간 (개월)")

    class Config:
        env_prefix = "RECURRENCE_"
        case_sensitive = False


class MaintenanceSettings(BaseSettings):
    """반복 일정 유지보수 스케줄러 설정"""

    interval_minutes: int = Field(default=60, description="유지보수 실행 간격 (분)")
    error_retry_minutes: int = Field(default=15, description="오류 후 재시도 간격 (분)")
    enable_cleanup: bool = Field(default=True, description="오래된 일정 정리 활성화")
    enable_integrity_check: bool = Field(default=True, description="무결성 검사 활성화")
    tenant_ids: List[str] = Field(default_factory=list, description="유지보수 대상 테넌트")

    class Config:
        env_prefix = "MAINTENANCE_"
        case_sensitive = False


class LedgerSettings(BaseSettings):
    """등록 원장 설정"""

    check_in_opens_minutes_before: int = Field(default=60, description="시작 전 체크인 허용 (분)")
    check_in_closes_minutes_after: int = Field(default=30, description="시작 후 체크인 마감 (분)")
    lock_timeout_seconds: float = Field(default=5.0, description="이벤트 잠금 대기 시간 (초)")
    max_optimistic_retries: int = Field(default=3, description="버전 충돌 시 재검증 횟수")

    class Config:
        env_prefix = "LEDGER_"
        case_sensitive = False


class BookingSettings(BaseSettings):
    """시설 예약 설정"""

    slot_search_increment_minutes: int = Field(default=15, description="빈 시간 탐색 간격 (분)")
    slot_search_horizon_days: int = Field(default=30, description="빈 시간 탐색 범위 (일)")
    available_times_step_minutes: int = Field(default=30, description="예약 가능 시간 목록 간격 (분)")
    alternative_day_start_hour: int = Field(default=7, description="대안 시간 탐색 시작 시각")
    alternative_day_end_hour: int = Field(default=21, description="대안 시간 탐색 종료 시각")
    max_alternatives: int = Field(default=3, description="대안 시간 최대 개수")
    check_in_early_minutes: int = Field(default=15, description="예약 시작 전 체크인 허용 (분)")
    modify_cutoff_hours: int = Field(default=2, description="예약 변경 마감 (시작 전 시간)")
    cancellation_penalty_rate: float = Field(default=0.5, description="취소 위약 비율")
    usage_warning_ratio: float = Field(default=0.8, description="일일 한도 경고 비율")
    lock_timeout_seconds: float = Field(default=5.0, description="시설 잠금 대기 시간 (초)")
    max_recurring_bookings: int = Field(default=52, description="반복 예약 1회 생성 최대 회차")

    class Config:
        env_prefix = "BOOKING_"
        case_sensitive = False


class SupabaseSettings(BaseSettings):
    """Supabase 설정"""

    supabase_url: str = Field(default="", description="Supabase Project URL")
    supabase_key: str = Field(default="", description="Supabase service key")

    class Config:
        env_prefix = ""
        case_sensitive = False


@lru_cache()
def get_recurrence_settings() -> RecurrenceSettings:
    return RecurrenceSettings()


@lru_cache()
def get_maintenance_settings() -> MaintenanceSettings:
    return MaintenanceSettings()


@lru_cache()
def get_ledger_settings() -> LedgerSettings:
    return LedgerSettings()


@lru_cache()
def get_booking_settings() -> BookingSettings:
    return BookingSettings()


# 전역 설정 인스턴스
supabase_config = SupabaseSettings()
