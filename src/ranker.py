"""상위 변화 선정 모듈 - 절대 금액 기준 상위 N개 bin 변화"""

from __future__ import annotations

from decimal import Decimal

from src.models import BinDelta, TopChange

TWO = Decimal(2)
HUNDRED = Decimal(100)


class TopChangeRanker:
    """bin 변화 중 |amount| 상위 N개 선정"""

    def __init__(self, top_n: int = 3):
        self.top_n = top_n

    @staticmethod
    def sort_key(delta: BinDelta) -> tuple[Decimal, Decimal]:
        """|amount| 내림차순, 동률이면 lower_price 높은 쪽 우선"""
        return (-abs(delta.amount), -delta.lower_price)

    def rank(self, deltas: tuple[BinDelta, ...] | list[BinDelta],
             total_liquidity_after: Decimal) -> tuple[TopChange, ...]:
        """상위 변화 반환. 변화가 N개 미만이면 있는 만큼만 (0으로 채우지 않음)."""
        nonzero = [d for d in deltas if d.amount != 0]
        ranked = sorted(nonzero, key=self.sort_key)[:self.top_n]
        return tuple(self._to_top_change(d, total_liquidity_after) for d in ranked)

    @staticmethod
    def _to_top_change(delta: BinDelta, total_after: Decimal) -> TopChange:
        amount = delta.amount
        percent = amount / total_after * HUNDRED if total_after else Decimal(0)
        return TopChange(
            bin_range=(delta.lower_price, delta.upper_price),
            amount=amount,
            percent=percent,
            price_point=(delta.lower_price + delta.upper_price) / TWO,
            change_type=delta.change_type,
        )
