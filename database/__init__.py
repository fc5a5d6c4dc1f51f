"""
저장소 구현 (Supabase, 인메모리)
"""
