"""
반복 일정 유지보수 스케줄러
"""
