"""데이터 모델 정의 - 풀 스냅샷, bin 변화량, 고래 활동 이벤트"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


# ── 열거형 ──

class ChangeType(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class DetectionMethod(str, Enum):
    POLLING = "polling"
    EVENT_LISTENER = "eventListener"


class PoolState(str, Enum):
    """풀별 감지 상태머신"""
    UNINITIALIZED = "uninitialized"
    BASELINE = "baseline"
    EVALUATING = "evaluating"


# ── 스냅샷 관련 ──

@dataclass(frozen=True)
class LiquidityBin:
    """가격 구간 하나에 존재하는 유동성"""
    lower_price: Decimal
    upper_price: Decimal
    liquidity_usd: Decimal


@dataclass(frozen=True)
class PoolSnapshot:
    """특정 시점의 풀 유동성 분포 (생성 후 불변)"""
    pool_address: str
    pool_name: str
    timestamp: int               # 스냅샷 시각 (ms)
    current_price: Decimal
    bins: tuple[LiquidityBin, ...] = ()

    @property
    def total_liquidity(self) -> Decimal:
        return sum((b.liquidity_usd for b in self.bins), Decimal(0))


# ── 분석 결과 ──

@dataclass(frozen=True)
class BinDelta:
    """통합 가격 구간(bucket) 하나의 유동성 변화"""
    lower_price: Decimal
    upper_price: Decimal
    before: Decimal
    after: Decimal

    @property
    def amount(self) -> Decimal:
        return self.after - self.before

    @property
    def change_type(self) -> ChangeType:
        return ChangeType.ADD if self.amount > 0 else ChangeType.REMOVE


@dataclass(frozen=True)
class TopChange:
    """상위 변화 bin 하나"""
    bin_range: tuple[Decimal, Decimal]   # (lower, upper)
    amount: Decimal                      # 부호 있는 USD
    percent: Decimal                     # 변경 후 풀 전체 대비 %
    price_point: Decimal
    change_type: ChangeType

    def to_dict(self) -> dict:
        return {
            "bin_range": {"lower": str(self.bin_range[0]), "upper": str(self.bin_range[1])},
            "amount": str(self.amount),
            "percent": str(self.percent),
            "price_point": str(self.price_point),
            "type": self.change_type.value,
        }


@dataclass(frozen=True)
class DeltaReport:
    """두 스냅샷 비교 결과 (BinDeltaAnalyzer 출력)"""
    deltas: tuple[BinDelta, ...]
    total_liquidity_before: Decimal
    total_liquidity_after: Decimal
    total_change_amount: Decimal
    total_change_percent: Decimal
    concentration_before: Decimal
    concentration_after: Decimal


# ── 출력 이벤트 ──

@dataclass(frozen=True)
class WhaleActivityEvent:
    """감지 엔진의 유일한 출력 - 유의미한 유동성 변화 1건"""
    id: str
    pool_address: str
    pool_name: str
    timestamp: int               # 변경 후 스냅샷 시각 (ms)
    total_liquidity_before: Decimal
    total_liquidity_after: Decimal
    total_change_amount: Decimal
    total_change_percent: Decimal
    top_changes: tuple[TopChange, ...]
    concentration_before: Decimal
    concentration_after: Decimal
    current_price: Decimal
    risk_level: RiskLevel
    detection_method: DetectionMethod
    detection_time: int = field(default=0)   # 감지 시각 (ms)

    def to_record(self) -> dict:
        """저장/전송용 평탄화 레코드 (금액은 문자열)"""
        return {
            "id": self.id,
            "pool_address": self.pool_address,
            "pool_name": self.pool_name,
            "timestamp": self.timestamp,
            "total_liquidity_before": str(self.total_liquidity_before),
            "total_liquidity_after": str(self.total_liquidity_after),
            "total_change_amount": str(self.total_change_amount),
            "total_change_percent": str(self.total_change_percent),
            "top_changes": json.dumps([c.to_dict() for c in self.top_changes]),
            "concentration_before": str(self.concentration_before),
            "concentration_after": str(self.concentration_after),
            "current_price": str(self.current_price),
            "risk_level": self.risk_level.value,
            "detection_method": self.detection_method.value,
            "detection_time": self.detection_time,
        }
