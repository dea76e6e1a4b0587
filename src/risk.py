"""위험도 분류 모듈 - 총 변화율과 집중도 상승폭으로 low/medium/high 판정"""

from __future__ import annotations

from decimal import Decimal

from src.config import RiskThresholds, to_decimal
from src.models import RiskLevel


def classify_risk(total_change_percent: Decimal, concentration_before: Decimal,
                  concentration_after: Decimal, thresholds: RiskThresholds) -> RiskLevel:
    """순수 함수. 집중도는 상승분만 반영 (하락은 위험 신호로 보지 않음)."""
    change = abs(total_change_percent)
    concentration_rise = concentration_after - concentration_before

    if (change >= to_decimal(thresholds.high_change_pct)
            or concentration_rise >= to_decimal(thresholds.high_concentration_delta)):
        return RiskLevel.HIGH
    if (change >= to_decimal(thresholds.medium_change_pct)
            or concentration_rise >= to_decimal(thresholds.medium_concentration_delta)):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskClassifier:
    """설정된 임계값으로 위험도 분류"""

    def __init__(self, thresholds: RiskThresholds | None = None):
        self.thresholds = thresholds or RiskThresholds()

    def classify(self, total_change_percent: Decimal, concentration_before: Decimal,
                 concentration_after: Decimal) -> RiskLevel:
        return classify_risk(total_change_percent, concentration_before,
                             concentration_after, self.thresholds)
