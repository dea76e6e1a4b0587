"""텔레그램 봇을 통한 고래 활동 알림 및 상태 리포트 모듈"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

import aiohttp

from src.config import Config
from src.models import RiskLevel, WhaleActivityEvent

logger = logging.getLogger(__name__)

RISK_ICONS = {
    RiskLevel.LOW: "🟢",
    RiskLevel.MEDIUM: "🟡",
    RiskLevel.HIGH: "🔴",
}


class TelegramReporter:
    """텔레그램 알림 채널 (EventSink 구현)"""

    def __init__(self, config: Config):
        self.bot_token = config.telegram_bot_token
        self.chat_id = config.telegram_chat_id
        self.min_risk = RiskLevel(config.telegram_min_risk)
        self.enabled = bool(self.bot_token and self.chat_id)

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")

    @staticmethod
    def _format_usd(amount: Decimal) -> str:
        """부호 포함 USD 축약 표기 (예: +$1.25M)"""
        sign = "-" if amount < 0 else "+"
        value = abs(amount)
        if value >= 1_000_000:
            return f"{sign}${value / 1_000_000:.2f}M"
        if value >= 1_000:
            return f"{sign}${value / 1_000:.1f}K"
        return f"{sign}${value:.2f}"

    async def send_message(self, text: str) -> None:
        """텔레그램 메시지 전송 (실패 시 로깅만, 감지에 영향 없음)"""
        if not self.enabled:
            return
        try:
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        logger.warning("텔레그램 전송 실패 (status=%d): %s", resp.status, body)
        except Exception:
            logger.warning("텔레그램 메시지 전송 중 예외 발생", exc_info=True)

    async def emit(self, event: WhaleActivityEvent) -> None:
        """min_risk 이상 이벤트만 알림"""
        if event.risk_level.rank >= self.min_risk.rank:
            await self.send_whale_alert(event)

    def format_whale_alert(self, event: WhaleActivityEvent) -> str:
        icon = RISK_ICONS[event.risk_level]
        rows = []
        for c in event.top_changes:
            arrow = "▲" if c.change_type.value == "add" else "▼"
            rows.append(
                f"  {arrow} <code>[{c.bin_range[0]}, {c.bin_range[1]}]</code> "
                f"<b>{self._format_usd(c.amount)}</b> ({c.percent:+.2f}%)"
            )
        return (
            "━━━━━━━━━━━━━━━━━━━━\n"
            f"🐋 <b>WHALE ACTIVITY</b> {icon} {event.risk_level.value.upper()}\n"
            "━━━━━━━━━━━━━━━━━━━━\n"
            f"🕐 {self._now_str()}\n"
            "\n"
            f"💧 <b>{event.pool_name}</b>\n"
            f"   <code>{event.pool_address}</code>\n"
            "\n"
            f"📦 총 유동성: {self._format_usd(event.total_liquidity_before)[1:]} → "
            f"{self._format_usd(event.total_liquidity_after)[1:]}\n"
            f"📊 변화: <b>{self._format_usd(event.total_change_amount)}</b> "
            f"({event.total_change_percent:+.2f}%)\n"
            f"🎯 집중도: {event.concentration_before:.3f} → {event.concentration_after:.3f}\n"
            f"💱 현재가: <code>{event.current_price}</code>\n"
            "\n"
            "┌── 상위 변화 bin ──┐\n"
            + ("\n".join(rows) if rows else "  (없음)") + "\n"
            "└───────────────────┘\n"
            f"📡 {event.detection_method.value}\n"
            "━━━━━━━━━━━━━━━━━━━━"
        )

    async def send_whale_alert(self, event: WhaleActivityEvent) -> None:
        """고래 활동 알림"""
        if not self.enabled:
            return
        await self.send_message(self.format_whale_alert(event))

    async def send_startup_report(self, config: Config, pool_count: int) -> None:
        """시스템 시작 알림"""
        if not self.enabled:
            return
        listener_status = "✅ ON" if config.rpc_ws_url else "⛔ OFF"
        text = (
            "━━━━━━━━━━━━━━━━━━━━\n"
            "🚀 <b>WHALE MONITOR ONLINE</b>\n"
            "━━━━━━━━━━━━━━━━━━━━\n"
            f"🕐 {self._now_str()}\n"
            "\n"
            f"💧 감시 풀: <b>{pool_count}</b>개\n"
            f"⏱ 폴링 주기: <code>{config.poll_interval}s</code>\n"
            f"📏 유의 변화: <code>{config.significance_floor_pct}%</code> / "
            f"bin <code>{config.per_change_floor_pct}%</code>\n"
            f"📡 이벤트 리스너: {listener_status}\n"
            "━━━━━━━━━━━━━━━━━━━━"
        )
        await self.send_message(text)

    async def send_source_failure_alert(self, pool_address: str, reason: str,
                                        attempt: int) -> None:
        """데이터 소스 연속 실패 알림"""
        if not self.enabled:
            return
        text = (
            "━━━━━━━━━━━━━━━━━━━━\n"
            "⚠️ <b>SOURCE UNAVAILABLE</b>\n"
            "━━━━━━━━━━━━━━━━━━━━\n"
            f"🕐 {self._now_str()}\n"
            "\n"
            f"💧 <code>{pool_address}</code>\n"
            f"❌ 연속 실패: <b>{attempt}</b>회\n"
            f"📡 사유: {reason}\n"
            "\n"
            "🔄 백오프 후 재시도 중...\n"
            "━━━━━━━━━━━━━━━━━━━━"
        )
        await self.send_message(text)

    async def send_daily_report(self, daily_stats: dict) -> None:
        """일별 요약 리포트"""
        if not self.enabled:
            return
        total_events = daily_stats.get("total_events", 0)
        failures = daily_stats.get("total_source_failures", 0)
        health = "🟢 GOOD" if failures == 0 else "🟡 DEGRADED" if failures <= 10 else "🔴 BAD"
        text = (
            "━━━━━━━━━━━━━━━━━━━━\n"
            "📅 <b>DAILY REPORT</b>\n"
            "━━━━━━━━━━━━━━━━━━━━\n"
            f"🕐 {self._now_str()}\n"
            "\n"
            f"🏥 소스 상태: {health}\n"
            f"🐋 감지 이벤트: <b>{total_events:,}</b>건\n"
            f"❌ 소스 실패: <b>{failures:,}</b>회\n"
            "━━━━━━━━━━━━━━━━━━━━"
        )
        await self.send_message(text)
