"""이벤트 버퍼 모듈 - 풀별 고래 활동 이벤트 메모리 보관 및 플러시"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models import WhaleActivityEvent

logger = logging.getLogger(__name__)


class EventBuffer:
    """메모리 버퍼 - 풀별 이벤트 레코드 저장 (EventSink 구현)"""

    def __init__(self, max_memory_mb: int = 100):
        self.max_memory_bytes = max_memory_mb * 1024 * 1024
        self._events: dict[str, list[dict]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def emit(self, event: WhaleActivityEvent) -> None:
        async with self._lock:
            self._events[event.pool_address].append(event.to_record())

    async def flush(self) -> dict[str, list[dict]]:
        """모든 레코드를 반환하고 버퍼 초기화"""
        async with self._lock:
            result = dict(self._events)
            self._events = defaultdict(list)
            return result

    def count(self) -> int:
        return sum(len(v) for v in self._events.values())

    def estimate_memory_usage(self) -> int:
        """현재 메모리 사용량 추정 (바이트)"""
        total = 0
        for records in self._events.values():
            total += sys.getsizeof(records)
            for r in records:
                total += sys.getsizeof(r)
                total += sum(sys.getsizeof(v) for v in r.values())
        return total

    def needs_force_flush(self) -> bool:
        """강제 플러시 필요 여부"""
        return self.estimate_memory_usage() >= self.max_memory_bytes
