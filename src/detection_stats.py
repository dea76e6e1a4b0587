"""감지 통계 로깅 모듈 - 이벤트/거부/소스 실패 집계, 주기 로그, 일별 요약"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models import WhaleActivityEvent

logger = logging.getLogger(__name__)


class DetectionStats:
    """감지 사이클 결과 집계"""

    MAX_FAILURE_BUFFER = 10000  # 실패 기록 최대 보관 수

    def __init__(self, log_dir: Path | str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._events_by_risk: dict[str, int] = defaultdict(int)
        self._events_by_pool: dict[str, int] = defaultdict(int)
        self._quiet_cycles: dict[str, int] = defaultdict(int)
        self._seeds: dict[str, int] = defaultdict(int)
        self._rejections: list[dict] = []
        self._source_failures: list[dict] = []
        self._daily_events = 0
        self._daily_failures = 0

    def record_event(self, event: WhaleActivityEvent) -> None:
        """유의미한 변화 감지 기록"""
        self._events_by_risk[event.risk_level.value] += 1
        self._events_by_pool[event.pool_address] += 1
        self._daily_events += 1

    def record_quiet(self, pool_address: str) -> None:
        """임계값 미만 변화 (이벤트 없음)"""
        self._quiet_cycles[pool_address] += 1

    def record_seed(self, pool_address: str) -> None:
        """첫 관측 - 기준 스냅샷 저장"""
        self._seeds[pool_address] += 1

    def record_rejection(self, pool_address: str, kind: str, reason: str,
                         timestamp: float) -> None:
        """스냅샷 거부 기록 (validation / out_of_order / malformed)"""
        if len(self._rejections) >= self.MAX_FAILURE_BUFFER:
            self._rejections = self._rejections[-self.MAX_FAILURE_BUFFER // 2:]
        self._rejections.append({
            "timestamp": timestamp,
            "pool_address": pool_address,
            "kind": kind,
            "reason": reason,
        })

    def record_source_failure(self, pool_address: str, reason: str,
                              timestamp: float) -> None:
        """데이터 소스 조회 실패 기록"""
        if len(self._source_failures) >= self.MAX_FAILURE_BUFFER:
            self._source_failures = self._source_failures[-self.MAX_FAILURE_BUFFER // 2:]
        self._source_failures.append({
            "timestamp": timestamp,
            "pool_address": pool_address,
            "reason": reason,
        })
        self._daily_failures += 1

    def get_periodic_stats(self) -> dict:
        """현재 주기 통계 반환"""
        rejection_counts: dict[str, int] = defaultdict(int)
        for r in self._rejections:
            rejection_counts[r["kind"]] += 1
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_count": sum(self._events_by_risk.values()),
            "events_by_risk": dict(self._events_by_risk),
            "events_by_pool": dict(self._events_by_pool),
            "quiet_cycles": sum(self._quiet_cycles.values()),
            "seed_count": sum(self._seeds.values()),
            "rejection_counts": dict(rejection_counts),
            "rejections": list(self._rejections),
            "source_failure_count": len(self._source_failures),
            "source_failures": list(self._source_failures),
        }

    async def write_periodic_log(self) -> Path:
        """주기적 통계 JSON 로그 작성 후 주기 카운터 리셋"""
        stats = self.get_periodic_stats()
        now = datetime.now(timezone.utc)
        log_file = self.log_dir / f"stats_{now.strftime('%Y%m%d_%H')}.json"
        with open(log_file, "w") as f:
            json.dump(stats, f, indent=2, default=str)
        self._events_by_risk.clear()
        self._events_by_pool.clear()
        self._quiet_cycles.clear()
        self._seeds.clear()
        self._rejections.clear()
        self._source_failures.clear()
        logger.info(f"[로그] {log_file}")
        return log_file

    async def write_daily_summary(self) -> dict:
        """일별 요약 리포트 생성, 요약 딕셔너리 반환"""
        now = datetime.now(timezone.utc)
        summary = {
            "date": now.strftime("%Y-%m-%d"),
            "total_events": self._daily_events,
            "total_source_failures": self._daily_failures,
        }
        log_file = self.log_dir / f"daily_{now.strftime('%Y%m%d')}.json"
        with open(log_file, "w") as f:
            json.dump(summary, f, indent=2, default=str)
        self._daily_events = 0
        self._daily_failures = 0
        return summary
