"""
리소스 단위 잠금

(tenant_id, 리소스 종류, 리소스 id) 키로 읽기-검증-쓰기 구간을 직렬화한다.
프로세스 내부 잠금이며, 다중 프로세스 환경에서는 저장소의 버전 검사가 함께 동작한다.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional, Tuple

from loguru import logger

from .errors import LockTimeout


LockKey = Tuple[Hashable, ...]


def event_key(tenant_id: str, event_id: str) -> LockKey:
    return (tenant_id, "event", event_id)


def facility_key(tenant_id: str, facility_id: str) -> LockKey:
    return (tenant_id, "facility", facility_id)


def series_key(tenant_id: str, master_event_id: str) -> LockKey:
    return (tenant_id, "series", master_event_id)


def equipment_key(tenant_id: str, pool_id: str) -> LockKey:
    return (tenant_id, "equipment", pool_id)


def member_key(tenant_id: str, member_id: str) -> LockKey:
    return (tenant_id, "member", member_id)


class _LockEntry:
    """잠금 + 참조 수 (대기자 포함)"""

    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockRegistry:
    """
    키별 잠금 레지스트리

    잠금을 보유하거나 기다리는 호출자가 없어지면 항목을 제거하므로
    장기 실행 프로세스에서도 키 수만큼 계속 늘어나지 않는다.
    """

    def __init__(self):
        self._locks: Dict[LockKey, _LockEntry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: LockKey) -> _LockEntry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _LockEntry()
                self._locks[key] = entry
            entry.refs += 1
            return entry

    def _checkin(self, key: LockKey, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: LockKey, timeout: Optional[float] = None) -> Iterator[None]:
        """
        잠금 획득 후 블록 실행

        timeout(초) 안에 획득하지 못하면 LockTimeout. None이면 무기한 대기하지 않도록
        호출자가 항상 값을 넘기는 것을 권장한다.
        """
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=timeout if timeout is not None else -1)
            if not acquired:
                logger.warning(f"잠금 대기 시간 초과: {key}")
                raise LockTimeout(f"Timed out waiting for lock on {key[1]} {key[-1]}", {"key": list(key)})
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    @contextmanager
    def try_hold(self, key: LockKey) -> Iterator[bool]:
        """비차단 잠금 - 이미 실행 중이면 False를 넘겨준다 (single-flight)"""
        entry = self._checkout(key)
        acquired = entry.lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            self._checkin(key, entry)

    def is_held(self, key: LockKey) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# 엔진 공용 레지스트리
default_locks = KeyedLockRegistry()
