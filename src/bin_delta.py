"""bin 변화량 분석 모듈 - 가격 구간 겹침 기반 재정렬, 총량/집중도 계산"""

from __future__ import annotations

from bisect import bisect_left
from decimal import Decimal

from src.models import BinDelta, DeltaReport, LiquidityBin, PoolSnapshot

ZERO = Decimal(0)
HUNDRED = Decimal(100)


class BinDeltaAnalyzer:
    """두 스냅샷의 bin 단위 유동성 변화 분석

    두 스냅샷의 bin 경계가 달라도 된다 (병합, 분할, 경계 이동).
    인덱스가 아닌 가격 구간 겹침으로 매칭한다.
    """

    def analyze(self, before: PoolSnapshot, after: PoolSnapshot) -> DeltaReport:
        """before → after 변화 분석 (시간순)"""
        total_before = before.total_liquidity
        total_after = after.total_liquidity
        change = total_after - total_before

        return DeltaReport(
            deltas=self.compute_deltas(before.bins, after.bins),
            total_liquidity_before=total_before,
            total_liquidity_after=total_after,
            total_change_amount=change,
            total_change_percent=self.change_percent(change, total_before),
            concentration_before=self.concentration(before),
            concentration_after=self.concentration(after),
        )

    @staticmethod
    def build_edges(*bin_sets: tuple[LiquidityBin, ...]) -> list[Decimal]:
        """모든 bin 경계의 합집합 (오름차순)"""
        edges = set()
        for bins in bin_sets:
            for b in bins:
                edges.add(b.lower_price)
                edges.add(b.upper_price)
        return sorted(edges)

    @staticmethod
    def distribute(bins: tuple[LiquidityBin, ...], edges: list[Decimal]) -> list[Decimal]:
        """bin 유동성을 통합 구간(bucket)에 겹침 폭 비율로 분배.

        bin 안에서는 균등 분포로 가정. 마지막 조각은 잔여분을 받아
        bin 하나의 분배 합계가 원래 유동성과 정확히 같다.
        """
        amounts = [ZERO] * max(len(edges) - 1, 0)
        for b in bins:
            width = b.upper_price - b.lower_price
            allocated = ZERO
            i = bisect_left(edges, b.lower_price)
            while i < len(edges) - 1 and edges[i] < b.upper_price:
                hi = edges[i + 1]
                if hi >= b.upper_price:
                    share = b.liquidity_usd - allocated
                else:
                    share = b.liquidity_usd * (hi - edges[i]) / width
                amounts[i] += share
                allocated += share
                i += 1
        return amounts

    def compute_deltas(self, before_bins: tuple[LiquidityBin, ...],
                       after_bins: tuple[LiquidityBin, ...]) -> tuple[BinDelta, ...]:
        """통합 구간별 after - before. 변화 0인 구간은 제외."""
        edges = self.build_edges(before_bins, after_bins)
        before_amounts = self.distribute(before_bins, edges)
        after_amounts = self.distribute(after_bins, edges)

        deltas = []
        for i, (b, a) in enumerate(zip(before_amounts, after_amounts)):
            if a == b:
                continue
            deltas.append(BinDelta(
                lower_price=edges[i],
                upper_price=edges[i + 1],
                before=b,
                after=a,
            ))
        return tuple(deltas)

    @staticmethod
    def change_percent(change: Decimal, total_before: Decimal) -> Decimal:
        """변화율 (%). 이전 총량이 0이면 0."""
        if total_before == 0:
            return ZERO
        return change / total_before * HUNDRED

    @staticmethod
    def concentration(snapshot: PoolSnapshot) -> Decimal:
        """허핀달 지수 - bin 점유율 제곱합 (0 ~ 1).

        모든 유동성이 한 bin에 있으면 1, 총량 0이면 0.
        """
        total = snapshot.total_liquidity
        if total == 0:
            return ZERO
        hhi = ZERO
        nonempty = 0
        for b in snapshot.bins:
            if b.liquidity_usd:
                nonempty += 1
                share = b.liquidity_usd / total
                hhi += share * share
        if hhi >= 1:
            # 유효 자릿수 한계로 1로 반올림된 경우, bin 이 둘 이상이면 1 미만 유지
            return Decimal(1) if nonempty == 1 else Decimal(1).next_minus()
        return hhi
