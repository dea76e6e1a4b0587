"""고래 활동 감지 모듈 - 스냅샷 검증, 순서 검증, 변화 분석, 이벤트 생성 및 전달"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from src.bin_delta import BinDeltaAnalyzer
from src.config import Config, to_decimal
from src.errors import OutOfOrderSnapshot, ValidationError
from src.models import (
    DetectionMethod, PoolSnapshot, PoolState, WhaleActivityEvent,
)
from src.ranker import TopChangeRanker
from src.risk import RiskClassifier
from src.snapshot_store import SnapshotStore

if TYPE_CHECKING:
    from src.detection_stats import DetectionStats

logger = logging.getLogger(__name__)

SnapshotFetcher = Callable[[str], Awaitable[PoolSnapshot]]


class EventSink(Protocol):
    """이벤트 소비자 (API / 저장소 / 알림). 전달 보장은 소비자 책임."""

    async def emit(self, event: WhaleActivityEvent) -> None: ...


def _is_number(value) -> bool:
    return isinstance(value, Decimal) and value.is_finite()


def validate_snapshot(snapshot: PoolSnapshot) -> None:
    """스냅샷 형식 검증. 잘못되면 ValidationError."""
    if not isinstance(snapshot, PoolSnapshot):
        raise ValidationError(f"not a PoolSnapshot: {type(snapshot).__name__}")
    if not isinstance(snapshot.pool_address, str) or not snapshot.pool_address:
        raise ValidationError("missing pool_address")
    if isinstance(snapshot.timestamp, bool) or not isinstance(snapshot.timestamp, int) \
            or snapshot.timestamp <= 0:
        raise ValidationError(f"{snapshot.pool_address}: invalid timestamp {snapshot.timestamp!r}")
    if not _is_number(snapshot.current_price) or snapshot.current_price < 0:
        raise ValidationError(
            f"{snapshot.pool_address}: invalid current_price {snapshot.current_price!r}"
        )

    prev_upper = None
    for i, b in enumerate(snapshot.bins):
        if not (_is_number(b.lower_price) and _is_number(b.upper_price)
                and _is_number(b.liquidity_usd)):
            raise ValidationError(f"{snapshot.pool_address}: bin[{i}] has non-numeric field")
        if b.lower_price >= b.upper_price:
            raise ValidationError(
                f"{snapshot.pool_address}: bin[{i}] inverted bounds "
                f"{b.lower_price} >= {b.upper_price}"
            )
        if b.liquidity_usd < 0:
            raise ValidationError(
                f"{snapshot.pool_address}: bin[{i}] negative liquidity {b.liquidity_usd}"
            )
        if prev_upper is not None and b.lower_price < prev_upper:
            raise ValidationError(
                f"{snapshot.pool_address}: bin[{i}] overlaps or is out of order "
                f"(lower={b.lower_price} < previous upper={prev_upper})"
            )
        prev_upper = b.upper_price


class WhaleActivityDetector:
    """풀별 상태머신: Uninitialized → Baseline → (Evaluating → Baseline)*

    같은 풀의 사이클은 SnapshotStore 의 풀 락으로 직렬화된다.
    """

    def __init__(self, config: Config, store: SnapshotStore | None = None,
                 stats: DetectionStats | None = None,
                 sinks: list[EventSink] | None = None):
        self.config = config
        self.store = store if store is not None else SnapshotStore()
        self.stats = stats
        self.analyzer = BinDeltaAnalyzer()
        self.ranker = TopChangeRanker(config.top_change_count)
        self.classifier = RiskClassifier(config.risk_thresholds)
        self.significance_floor = to_decimal(config.significance_floor_pct)
        self.per_change_floor = to_decimal(config.per_change_floor_pct)
        self.default_method = DetectionMethod(config.detection_method)
        self._sinks: list[EventSink] = list(sinks or [])
        self._evaluating: set[str] = set()

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def state(self, pool_address: str) -> PoolState:
        if pool_address in self._evaluating:
            return PoolState.EVALUATING
        if pool_address in self.store:
            return PoolState.BASELINE
        return PoolState.UNINITIALIZED

    # ── 순수 계산 ──

    def evaluate(self, before: PoolSnapshot, after: PoolSnapshot,
                 detection_method: DetectionMethod | None = None) -> WhaleActivityEvent | None:
        """before → after 분석. 임계값 미만이면 None."""
        report = self.analyzer.analyze(before, after)
        top_changes = self.ranker.rank(report.deltas, report.total_liquidity_after)

        total_significant = abs(report.total_change_percent) >= self.significance_floor
        bin_significant = any(abs(c.percent) >= self.per_change_floor for c in top_changes)
        if not (total_significant or bin_significant):
            return None

        risk_level = self.classifier.classify(
            report.total_change_percent,
            report.concentration_before,
            report.concentration_after,
        )
        return WhaleActivityEvent(
            id=f"{after.pool_address}_{after.timestamp}_{uuid.uuid4().hex[:8]}",
            pool_address=after.pool_address,
            pool_name=after.pool_name or f"Pool_{after.pool_address[:8]}",
            timestamp=after.timestamp,
            total_liquidity_before=report.total_liquidity_before,
            total_liquidity_after=report.total_liquidity_after,
            total_change_amount=report.total_change_amount,
            total_change_percent=report.total_change_percent,
            top_changes=top_changes,
            concentration_before=report.concentration_before,
            concentration_after=report.concentration_after,
            current_price=after.current_price,
            risk_level=risk_level,
            detection_method=detection_method or self.default_method,
            detection_time=int(time.time() * 1000),
        )

    # ── 사이클 ──

    async def ingest(self, snapshot: PoolSnapshot,
                     detection_method: DetectionMethod | None = None) -> WhaleActivityEvent | None:
        """이미 확보한 스냅샷 1건 처리"""
        if not isinstance(snapshot, PoolSnapshot) or not snapshot.pool_address:
            validate_snapshot(snapshot)
        async with self.store.lease(snapshot.pool_address):
            event = self._apply(snapshot, detection_method)
        if event:
            await self._emit(event)
        return event

    async def run_cycle(self, pool_address: str, fetch: SnapshotFetcher,
                        detection_method: DetectionMethod | None = None,
                        timeout: float | None = None) -> WhaleActivityEvent | None:
        """조회 → 비교 → 저장 한 사이클 (풀 락 보유 상태로 진행).

        조회 실패/타임아웃/취소 시 저장소는 변경되지 않는다.
        """
        async with self.store.lease(pool_address):
            if timeout:
                snapshot = await asyncio.wait_for(fetch(pool_address), timeout)
            else:
                snapshot = await fetch(pool_address)
            if isinstance(snapshot, PoolSnapshot) and snapshot.pool_address != pool_address:
                raise ValidationError(
                    f"requested {pool_address}, got snapshot for {snapshot.pool_address}"
                )
            event = self._apply(snapshot, detection_method)
        if event:
            await self._emit(event)
        return event

    def _apply(self, snapshot: PoolSnapshot,
               detection_method: DetectionMethod | None) -> WhaleActivityEvent | None:
        """풀 락을 보유한 상태에서만 호출"""
        validate_snapshot(snapshot)
        pool = snapshot.pool_address
        prior = self.store.get(pool)

        if prior is None:
            self.store.put(pool, snapshot)
            if self.stats:
                self.stats.record_seed(pool)
            logger.info(f"[기준] {pool} 첫 스냅샷 저장 (bins={len(snapshot.bins)})")
            return None

        if snapshot.timestamp <= prior.timestamp:
            raise OutOfOrderSnapshot(pool, prior.timestamp, snapshot.timestamp)

        self._evaluating.add(pool)
        try:
            event = self.evaluate(prior, snapshot, detection_method)
        finally:
            self._evaluating.discard(pool)

        if not self.store.compare_and_swap(pool, prior, snapshot):
            return None

        if event is None:
            if self.stats:
                self.stats.record_quiet(pool)
            logger.debug(f"[감지] {pool} 유의미한 변화 없음")
            return None

        if self.stats:
            self.stats.record_event(event)
        logger.info(
            f"[감지] {event.pool_name} ({pool}) 변화 {event.total_change_amount:+f} USD "
            f"({event.total_change_percent:+.2f}%) 위험도={event.risk_level.value}"
        )
        return event

    async def _emit(self, event: WhaleActivityEvent) -> None:
        """모든 소비자에게 전달. 소비자 실패는 로깅만 하고 감지에 영향 없음."""
        results = await asyncio.gather(
            *(sink.emit(event) for sink in self._sinks), return_exceptions=True
        )
        for sink, result in zip(self._sinks, results):
            if isinstance(result, Exception):
                logger.error(f"[전달 실패] {type(sink).__name__}: {result}")
