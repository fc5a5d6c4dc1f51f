"""
Supabase 데이터베이스 클라이언트
"""
from typing import Optional

from loguru import logger
from supabase import Client, create_client

from engine.config import supabase_config


# 싱글톤 클라이언트
_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Supabase 클라이언트 인스턴스 반환 (싱글톤)
    """
    global _supabase_client
    if _supabase_client is None:
        if not supabase_config.supabase_url or not supabase_config.supabase_key:
            raise ValueError("SUPABASE_URL과 SUPABASE_KEY 환경변수를 설정해주세요")
        _supabase_client = create_client(
            supabase_config.supabase_url,
            supabase_config.supabase_key
        )
        logger.info("Supabase 클라이언트 생성")
    return _supabase_client


def reset_supabase_client() -> None:
    """싱글톤 초기화 (설정 변경 후 재연결용)"""
    global _supabase_client
    _supabase_client = None
