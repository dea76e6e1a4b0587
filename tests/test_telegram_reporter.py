"""TelegramReporter 테스트 - Property 16 (전송 실패 격리) + 단위 테스트"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch, MagicMock

import pytest
from hypothesis import given, strategies as st, settings

from src.config import Config
from src.models import (
    ChangeType, DetectionMethod, RiskLevel, TopChange, WhaleActivityEvent,
)
from src.telegram_reporter import TelegramReporter


# --- Fixtures ---

@pytest.fixture
def config_with_token():
    """봇 토큰과 채팅 ID가 설정된 Config"""
    return Config(telegram_bot_token="test-bot-token", telegram_chat_id="12345")


@pytest.fixture
def reporter(config_with_token):
    return TelegramReporter(config_with_token)


@pytest.fixture
def disabled_reporter():
    return TelegramReporter(Config(telegram_bot_token="", telegram_chat_id=""))


def make_event(risk=RiskLevel.HIGH) -> WhaleActivityEvent:
    return WhaleActivityEvent(
        id="POOL1_2000_abcd1234",
        pool_address="5rCf1DM8LjKTw4YqhnoLcngyZYeNnQqztScTogYHAS6",
        pool_name="SOL-USDC",
        timestamp=2_000,
        total_liquidity_before=Decimal(1_000_000),
        total_liquidity_after=Decimal(1_300_000),
        total_change_amount=Decimal(300_000),
        total_change_percent=Decimal(30),
        top_changes=(
            TopChange((Decimal(102), Decimal(103)), Decimal(600_000), Decimal("46.15"),
                      Decimal("102.5"), ChangeType.ADD),
            TopChange((Decimal(101), Decimal(102)), Decimal(-300_000), Decimal("-23.08"),
                      Decimal("101.5"), ChangeType.REMOVE),
        ),
        concentration_before=Decimal("0.5"),
        concentration_after=Decimal("0.43"),
        current_price=Decimal("101.5"),
        risk_level=risk,
        detection_method=DetectionMethod.POLLING,
    )


# --- Property 16: 텔레그램 전송 실패 격리 ---

exception_types = st.sampled_from([
    ConnectionError, TimeoutError, ValueError, RuntimeError,
    OSError, Exception, TypeError, KeyError, PermissionError,
])


class TestTelegramFailureIsolation:
    """전송 시도에서 예외가 발생해도 호출자(감지 엔진)에게 전파되지 않아야 한다."""

    @given(exc_type=exception_types, exc_msg=st.text(min_size=0, max_size=100))
    @settings(max_examples=100)
    def test_send_message_never_raises(self, exc_type, exc_msg):
        reporter = TelegramReporter(Config(telegram_bot_token="tok", telegram_chat_id="123"))

        mock_session = MagicMock()
        mock_session.__aenter__ = AsyncMock(side_effect=exc_type(exc_msg))
        mock_session.__aexit__ = AsyncMock(return_value=False)

        with patch("aiohttp.ClientSession", return_value=mock_session):
            asyncio.run(reporter.send_message("hello"))

    @given(exc_type=exception_types)
    @settings(max_examples=50)
    def test_emit_never_raises(self, exc_type):
        reporter = TelegramReporter(Config(telegram_bot_token="tok", telegram_chat_id="123"))

        mock_session = MagicMock()
        mock_session.__aenter__ = AsyncMock(side_effect=exc_type("boom"))
        mock_session.__aexit__ = AsyncMock(return_value=False)

        with patch("aiohttp.ClientSession", return_value=mock_session):
            asyncio.run(reporter.emit(make_event()))


# --- 단위 테스트 ---

class TestTelegramUnit:

    def test_disabled_without_token(self, disabled_reporter):
        assert disabled_reporter.enabled is False
        with patch("aiohttp.ClientSession") as session_cls:
            asyncio.run(disabled_reporter.send_message("x"))
            asyncio.run(disabled_reporter.send_whale_alert(make_event()))
            session_cls.assert_not_called()

    def test_enabled_with_token(self, reporter):
        assert reporter.enabled is True
        assert reporter.min_risk == RiskLevel.MEDIUM

    @pytest.mark.parametrize("risk,sent", [
        (RiskLevel.LOW, False),
        (RiskLevel.MEDIUM, True),
        (RiskLevel.HIGH, True),
    ])
    def test_emit_filters_by_min_risk(self, reporter, risk, sent):
        reporter.send_whale_alert = AsyncMock()
        asyncio.run(reporter.emit(make_event(risk)))
        assert reporter.send_whale_alert.await_count == (1 if sent else 0)

    def test_min_risk_low_sends_everything(self):
        reporter = TelegramReporter(Config(telegram_bot_token="t", telegram_chat_id="1",
                                           telegram_min_risk="low"))
        reporter.send_whale_alert = AsyncMock()
        asyncio.run(reporter.emit(make_event(RiskLevel.LOW)))
        reporter.send_whale_alert.assert_awaited_once()

    def test_format_whale_alert(self, reporter):
        text = reporter.format_whale_alert(make_event())
        assert "WHALE ACTIVITY" in text
        assert "HIGH" in text
        assert "SOL-USDC" in text
        assert "5rCf1DM8LjKTw4YqhnoLcngyZYeNnQqztScTogYHAS6" in text
        assert "+$300.0K" in text
        assert "+$600.0K" in text
        assert "-$300.0K" in text
        assert "+30.00%" in text
        assert "[102, 103]" in text

    @pytest.mark.parametrize("amount,expected", [
        (Decimal("1250000"), "+$1.25M"),
        (Decimal("-1500"), "-$1.5K"),
        (Decimal("12.5"), "+$12.50"),
        (Decimal("0"), "+$0.00"),
    ])
    def test_format_usd(self, amount, expected):
        assert TelegramReporter._format_usd(amount) == expected

    def test_send_message_posts_payload(self, reporter):
        resp = MagicMock()
        resp.status = 200
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.post = MagicMock(return_value=resp)
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)

        with patch("aiohttp.ClientSession", return_value=session):
            asyncio.run(reporter.send_message("hi"))

        url = session.post.call_args[0][0]
        assert url == "https://api.telegram.org/bottest-bot-token/sendMessage"
        assert session.post.call_args[1]["json"]["chat_id"] == "12345"

    def test_reports_go_through_send_message(self, reporter):
        reporter.send_message = AsyncMock()

        async def scenario():
            await reporter.send_startup_report(Config(), 2)
            await reporter.send_source_failure_alert("POOL1", "HTTP 503", 3)
            await reporter.send_daily_report({"total_events": 5, "total_source_failures": 0})

        asyncio.run(scenario())
        assert reporter.send_message.await_count == 3
        texts = [c[0][0] for c in reporter.send_message.call_args_list]
        assert "WHALE MONITOR ONLINE" in texts[0]
        assert "POOL1" in texts[1]
        assert "DAILY REPORT" in texts[2]
