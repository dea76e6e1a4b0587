"""AccountChangeListener 테스트"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from src.config import Config
from src.detection_stats import DetectionStats
from src.detector import WhaleActivityDetector
from src.errors import OutOfOrderSnapshot, SourceUnavailable, ValidationError
from src.listener import AccountChangeListener
from src.models import DetectionMethod, LiquidityBin, PoolSnapshot
from src.scheduler import PollingScheduler


def make_listener(tmp_path, rpc_ws_url="wss://rpc.example", pools=("POOL1", "POOL2")):
    config = Config(pools=list(pools), rpc_ws_url=rpc_ws_url)
    stats = DetectionStats(tmp_path)
    detector = MagicMock()
    detector.run_cycle = AsyncMock(return_value=None)
    source = MagicMock()
    return AccountChangeListener(config, source, detector, stats), detector, stats


class TestSubscribeRequest:

    def test_request_format(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        req = listener.build_subscribe_request("POOL1")
        assert req["jsonrpc"] == "2.0"
        assert req["method"] == "accountSubscribe"
        assert req["params"][0] == "POOL1"
        assert req["params"][1] == {"encoding": "base64", "commitment": "confirmed"}

    def test_request_ids_increment(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        ids = [listener.build_subscribe_request(p)["id"] for p in ("A", "B", "C")]
        assert ids == [1, 2, 3]
        assert listener._pending == {1: "A", 2: "B", 3: "C"}

    def test_disabled_without_rpc_url(self, tmp_path):
        listener, *_ = make_listener(tmp_path, rpc_ws_url="")
        assert listener.enabled is False
        asyncio.run(listener.run())  # 즉시 반환


class TestHandleMessage:

    def test_ack_maps_subscription(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        req = listener.build_subscribe_request("POOL1")
        assert listener._handle_message(json.dumps({"jsonrpc": "2.0", "id": req["id"],
                                                    "result": 777})) is None
        assert listener._subscriptions == {777: "POOL1"}
        assert listener._pending == {}

    def test_notification_triggers_cycle(self, tmp_path):
        listener, detector, _ = make_listener(tmp_path)

        async def scenario():
            req = listener.build_subscribe_request("POOL1")
            listener._handle_message(json.dumps({"id": req["id"], "result": 42}))
            pool = listener._handle_message(json.dumps({
                "jsonrpc": "2.0",
                "method": "accountNotification",
                "params": {"subscription": 42, "result": {"value": {}}},
            }))
            await asyncio.gather(*listener._inflight)
            return pool

        assert asyncio.run(scenario()) == "POOL1"
        detector.run_cycle.assert_awaited_once()
        args = detector.run_cycle.call_args
        assert args[0][0] == "POOL1"
        assert args[0][2] == DetectionMethod.EVENT_LISTENER

    def test_unknown_subscription_ignored(self, tmp_path):
        listener, detector, _ = make_listener(tmp_path)
        msg = json.dumps({"method": "accountNotification", "params": {"subscription": 9}})
        assert listener._handle_message(msg) is None
        detector.run_cycle.assert_not_called()

    def test_invalid_json_ignored(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        assert listener._handle_message("{not json") is None

    def test_error_response_clears_pending(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        req = listener.build_subscribe_request("POOL1")
        msg = json.dumps({"id": req["id"], "error": {"code": -32602, "message": "bad"}})
        assert listener._handle_message(msg) is None
        assert listener._pending == {}
        assert listener._subscriptions == {}


class TestOnAccountChange:

    def test_rejection_recorded(self, tmp_path):
        listener, detector, stats = make_listener(tmp_path)
        detector.run_cycle = AsyncMock(side_effect=OutOfOrderSnapshot("POOL1", 5, 4))
        asyncio.run(listener.on_account_change("POOL1"))
        assert stats.get_periodic_stats()["rejection_counts"] == {"out_of_order": 1}

    def test_validation_recorded(self, tmp_path):
        listener, detector, stats = make_listener(tmp_path)
        detector.run_cycle = AsyncMock(side_effect=ValidationError("bad bin"))
        asyncio.run(listener.on_account_change("POOL1"))
        assert stats.get_periodic_stats()["rejection_counts"] == {"validation": 1}

    def test_source_failure_recorded(self, tmp_path):
        listener, detector, stats = make_listener(tmp_path)
        detector.run_cycle = AsyncMock(side_effect=SourceUnavailable("HTTP 502"))
        asyncio.run(listener.on_account_change("POOL1"))
        assert stats.get_periodic_stats()["source_failure_count"] == 1

    def test_timeout_recorded(self, tmp_path):
        listener, detector, stats = make_listener(tmp_path)
        detector.run_cycle = AsyncMock(side_effect=asyncio.TimeoutError())
        asyncio.run(listener.on_account_change("POOL1"))
        failures = stats.get_periodic_stats()["source_failures"]
        assert failures[0]["reason"] == "timeout"

    def test_real_detector_event_listener_method(self, tmp_path):
        """실제 감지기와 연결 시 eventListener 방식으로 이벤트 생성"""
        config = Config(pools=["POOL1"], rpc_ws_url="wss://rpc.example")
        detector = WhaleActivityDetector(config)
        snapshots = [
            PoolSnapshot("POOL1", "SOL-USDC", 1_000, Decimal(100),
                         (LiquidityBin(Decimal(100), Decimal(101), Decimal(1_000)),)),
            PoolSnapshot("POOL1", "SOL-USDC", 2_000, Decimal(100),
                         (LiquidityBin(Decimal(100), Decimal(101), Decimal(2_000)),)),
        ]
        source = MagicMock()
        source.fetch_snapshot = AsyncMock(side_effect=snapshots)
        events = []

        class Sink:
            async def emit(self, event):
                events.append(event)

        detector.add_sink(Sink())
        listener = AccountChangeListener(config, source, detector)

        async def scenario():
            await listener.on_account_change("POOL1")
            await listener.on_account_change("POOL1")

        asyncio.run(scenario())
        assert len(events) == 1
        assert events[0].detection_method == DetectionMethod.EVENT_LISTENER


class TestReconnectDelay:

    def test_increase_and_cap(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        for _ in range(10):
            listener._increase_reconnect_delay()
        assert listener.reconnect_delay == 60.0
        listener._reset_reconnect_delay()
        assert listener.reconnect_delay == 1.0


# ── 감시 대상 변경 반영 ──

def make_bound_pair(tmp_path, pools=("POOL1",)):
    """스케줄러 감시 목록을 공유하는 스케줄러 + 리스너"""
    config = Config(pools=list(pools), rpc_ws_url="wss://rpc.example", log_dir=str(tmp_path))
    detector = WhaleActivityDetector(config)
    source = MagicMock()
    scheduler = PollingScheduler(config, source, detector)
    listener = AccountChangeListener(config, source, detector,
                                     pools=lambda: scheduler.watched_pools)
    scheduler.listener = listener
    return scheduler, listener, detector, source


def snap(ts, liq) -> PoolSnapshot:
    return PoolSnapshot("POOL1", "SOL-USDC", ts, Decimal(100),
                        (LiquidityBin(Decimal(100), Decimal(101), Decimal(liq)),))


def notification(sub_id) -> str:
    return json.dumps({"jsonrpc": "2.0", "method": "accountNotification",
                       "params": {"subscription": sub_id, "result": {"value": {}}}})


class TestWatchSetSync:

    def test_unwatched_pool_notifications_do_not_reseed(self, tmp_path):
        scheduler, listener, detector, source = make_bound_pair(tmp_path)
        source.fetch_snapshot = AsyncMock(side_effect=[snap(1, 100), snap(2, 100), snap(3, 900)])

        async def scenario():
            await scheduler.poll_once("POOL1")
            req = listener.build_subscribe_request("POOL1")
            listener._handle_message(json.dumps({"id": req["id"], "result": 5}))
            scheduler.unwatch("POOL1")
            routed = [listener._handle_message(notification(5)) for _ in range(2)]
            await listener.shutdown()
            return routed

        assert asyncio.run(scenario()) == [None, None]
        assert detector.store.get("POOL1") is None
        assert source.fetch_snapshot.await_count == 1

    def test_on_account_change_skips_unwatched_pool(self, tmp_path):
        scheduler, listener, detector, source = make_bound_pair(tmp_path)
        source.fetch_snapshot = AsyncMock(return_value=snap(1, 100))
        asyncio.run(listener.on_account_change("POOL9"))
        source.fetch_snapshot.assert_not_called()
        assert "POOL9" not in detector.store

    def test_watch_subscribes_on_live_socket(self, tmp_path):
        scheduler, listener, *_ = make_bound_pair(tmp_path)
        ws = MagicMock()
        ws.send = AsyncMock()

        async def scenario():
            listener._ws = ws
            scheduler.watch("POOL3")
            await listener.shutdown()

        asyncio.run(scenario())
        sent = json.loads(ws.send.call_args[0][0])
        assert sent["method"] == "accountSubscribe"
        assert sent["params"][0] == "POOL3"
        assert listener._pending[sent["id"]] == "POOL3"

    def test_watch_without_connection_waits_for_reconnect(self, tmp_path):
        scheduler, listener, *_ = make_bound_pair(tmp_path)
        assert listener.subscribe("POOL3") is False
        scheduler.watch("POOL3")
        assert listener._pending == {}

    def test_unwatch_sends_unsubscribe_on_live_socket(self, tmp_path):
        scheduler, listener, *_ = make_bound_pair(tmp_path)
        ws = MagicMock()
        ws.send = AsyncMock()

        async def scenario():
            req = listener.build_subscribe_request("POOL1")
            listener._handle_message(json.dumps({"id": req["id"], "result": 5}))
            listener._ws = ws
            scheduler.unwatch("POOL1")
            await listener.shutdown()

        asyncio.run(scenario())
        sent = json.loads(ws.send.call_args[0][0])
        assert sent["method"] == "accountUnsubscribe"
        assert sent["params"] == [5]
        assert listener._subscriptions == {}

    def test_late_ack_for_unwatched_pool_is_unsubscribed(self, tmp_path):
        scheduler, listener, *_ = make_bound_pair(tmp_path)
        ws = MagicMock()
        ws.send = AsyncMock()

        async def scenario():
            listener._ws = ws
            req = listener.build_subscribe_request("POOL1")
            scheduler.unwatch("POOL1")
            listener._handle_message(json.dumps({"id": req["id"], "result": 8}))
            await listener.shutdown()

        asyncio.run(scenario())
        assert listener._subscriptions == {}
        sent = json.loads(ws.send.call_args[0][0])
        assert sent["method"] == "accountUnsubscribe"
        assert sent["params"] == [8]


class TestShutdown:

    def test_shutdown_waits_for_running_cycles(self, tmp_path):
        listener, *_ = make_listener(tmp_path)
        done = []

        async def cycle():
            await asyncio.sleep(0.01)
            done.append(True)

        async def scenario():
            listener._track(asyncio.create_task(cycle()))
            await listener.shutdown(timeout=1)

        asyncio.run(scenario())
        assert done == [True]
        assert listener._inflight == set()

    def test_shutdown_cancels_stuck_cycles(self, tmp_path):
        listener, *_ = make_listener(tmp_path)

        async def scenario():
            task = asyncio.create_task(asyncio.sleep(10))
            listener._track(task)
            await listener.shutdown(timeout=0.01)
            return task

        assert asyncio.run(scenario()).cancelled()
