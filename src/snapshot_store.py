"""기준 스냅샷 저장소 - 풀별 최신 스냅샷 보관 및 풀 단위 배타 접근"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from src.models import PoolSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """풀 주소 → 가장 최근 스냅샷.

    락은 풀마다 하나씩 둔다. 같은 풀의 get → 감지 → put 은
    ``async with store.lease(pool)`` 안에서 직렬화되고,
    서로 다른 풀은 서로를 기다리지 않는다.
    """

    def __init__(self):
        self._snapshots: dict[str, PoolSnapshot] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lease(self, pool_address: str) -> asyncio.Lock:
        """풀 전용 락 반환 (async with 로 사용)"""
        return self._locks[pool_address]

    def is_leased(self, pool_address: str) -> bool:
        lock = self._locks.get(pool_address)
        return lock is not None and lock.locked()

    def get(self, pool_address: str) -> PoolSnapshot | None:
        return self._snapshots.get(pool_address)

    def put(self, pool_address: str, snapshot: PoolSnapshot) -> None:
        self._snapshots[pool_address] = snapshot

    def compare_and_swap(self, pool_address: str, expected: PoolSnapshot | None,
                         new: PoolSnapshot) -> bool:
        """현재 값이 expected 와 같은 객체일 때만 new 로 교체"""
        if self._snapshots.get(pool_address) is not expected:
            logger.warning(f"[저장소] {pool_address} 기준 스냅샷이 사이클 도중 변경됨")
            return False
        self._snapshots[pool_address] = new
        return True

    def remove(self, pool_address: str) -> PoolSnapshot | None:
        """기준 스냅샷만 제거. 풀 락은 그대로 둔다 (풀당 락 하나)."""
        return self._snapshots.pop(pool_address, None)

    def pools(self) -> list[str]:
        return list(self._snapshots)

    def __contains__(self, pool_address: str) -> bool:
        return pool_address in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)
