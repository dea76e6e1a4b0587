"""계정 변경 구독 모듈 - Solana accountSubscribe WebSocket 수신 및 감지 트리거"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Callable

import websockets

from src.errors import MalformedData, OutOfOrderSnapshot, SourceUnavailable, ValidationError
from src.models import DetectionMethod

if TYPE_CHECKING:
    from src.config import Config
    from src.detection_stats import DetectionStats
    from src.detector import WhaleActivityDetector
    from src.snapshot_source import PoolSnapshotSource

logger = logging.getLogger(__name__)


class AccountChangeListener:
    """풀 계정 변경 알림 수신 → 즉시 감지 사이클 (detectionMethod=eventListener)"""

    def __init__(self, config: Config, source: PoolSnapshotSource,
                 detector: WhaleActivityDetector, stats: DetectionStats | None = None,
                 pools: Callable[[], list[str]] | None = None):
        self.config = config
        self.source = source
        self.detector = detector
        self.stats = stats
        self._pools = pools or (lambda: list(config.pools))
        self.reconnect_delay = 1.0
        self._next_id = 1
        self._pending: dict[int, str] = {}        # 요청 id → 풀
        self._subscriptions: dict[int, str] = {}  # 구독 id → 풀
        self._inflight: set[asyncio.Task] = set()
        self._ws = None  # 연결 중인 소켓

    @property
    def enabled(self) -> bool:
        return bool(self.config.rpc_ws_url)

    def is_watched(self, pool_address: str) -> bool:
        return pool_address in self._pools()

    def build_subscribe_request(self, pool_address: str) -> dict:
        """accountSubscribe JSON-RPC 요청 생성"""
        request_id = self._next_id
        self._next_id += 1
        self._pending[request_id] = pool_address
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "accountSubscribe",
            "params": [pool_address, {"encoding": "base64", "commitment": "confirmed"}],
        }

    def build_unsubscribe_request(self, subscription_id: int) -> dict:
        """accountUnsubscribe JSON-RPC 요청 생성 (응답은 구독 매핑에 쓰지 않음)"""
        request_id = self._next_id
        self._next_id += 1
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "accountUnsubscribe",
            "params": [subscription_id],
        }

    def subscribe(self, pool_address: str) -> bool:
        """연결 중이면 즉시 구독 요청 전송. 미연결이면 다음 연결 때 구독됨."""
        if self._ws is None:
            return False
        self._send(self.build_subscribe_request(pool_address))
        return True

    def unsubscribe(self, pool_address: str) -> bool:
        """풀 구독 해제. 알림 라우팅은 즉시 끊고, 연결 중이면 해제 요청 전송.
        응답 대기 중인 구독은 응답 도착 시 해제된다.
        """
        sub_ids = [s for s, p in self._subscriptions.items() if p == pool_address]
        for sub_id in sub_ids:
            del self._subscriptions[sub_id]
            if self._ws is not None:
                self._send(self.build_unsubscribe_request(sub_id))
        if sub_ids:
            logger.info(f"[구독 해제] {pool_address}")
        return bool(sub_ids)

    def _send(self, request: dict) -> None:
        self._track(asyncio.create_task(self._ws.send(json.dumps(request))))

    def _track(self, task: asyncio.Task) -> None:
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """진행 중인 감지 사이클 대기, timeout 넘기면 취소"""
        if not self._inflight:
            return
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if pending:
            logger.warning(f"[구독] 종료 시 미완료 사이클 {len(pending)}건 취소")

    async def run(self) -> None:
        """구독 루프 - 끊기면 지수 백오프 후 재연결"""
        if not self.enabled:
            logger.info("[구독] rpc_ws_url 미설정, 이벤트 리스너 비활성")
            return
        while True:
            try:
                await self._connect_and_listen()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[구독 에러] {e}, {self.reconnect_delay}초 후 재연결...")
                await asyncio.sleep(self.reconnect_delay)
                self._increase_reconnect_delay()

    async def _connect_and_listen(self) -> None:
        async with websockets.connect(self.config.rpc_ws_url, ping_interval=20) as ws:
            self._reset_reconnect_delay()
            self._pending.clear()
            self._subscriptions.clear()
            self._ws = ws
            try:
                for pool in self._pools():
                    await ws.send(json.dumps(self.build_subscribe_request(pool)))
                logger.info(f"[연결] RPC WebSocket 연결 성공, 구독 요청 {len(self._pending)}건")

                async for raw_msg in ws:
                    self._handle_message(raw_msg)
            finally:
                self._ws = None

    def _handle_message(self, raw_msg: str | bytes) -> str | None:
        """구독 응답/알림 처리. 알림이면 감지 태스크를 띄우고 풀 주소 반환."""
        try:
            data = json.loads(raw_msg)
        except json.JSONDecodeError:
            logger.warning(f"[구독] 잘못된 메시지: {raw_msg!r:.200}")
            return None

        # 구독 응답: {"id": 요청id, "result": 구독id}
        if "id" in data and "result" in data:
            pool = self._pending.pop(data["id"], None)
            if pool is None:
                return None
            if not self.is_watched(pool):
                # 응답 도착 전에 감시 해제된 풀
                if self._ws is not None:
                    self._send(self.build_unsubscribe_request(data["result"]))
                return None
            self._subscriptions[data["result"]] = pool
            logger.info(f"[구독] {pool} subscription={data['result']}")
            return None

        if "error" in data:
            pool = self._pending.pop(data.get("id"), None)
            logger.error(f"[구독 실패] {pool}: {data['error']}")
            return None

        if data.get("method") != "accountNotification":
            return None

        sub_id = data.get("params", {}).get("subscription")
        pool = self._subscriptions.get(sub_id)
        if pool is None:
            return None

        self._track(asyncio.create_task(self.on_account_change(pool)))
        return pool

    async def on_account_change(self, pool_address: str) -> None:
        """계정 변경 1건 → 감지 사이클. 실패는 기록만 하고 구독은 유지."""
        if not self.is_watched(pool_address):
            logger.debug(f"[구독] {pool_address} 감시 대상 아님, 알림 무시")
            return
        try:
            await self.detector.run_cycle(
                pool_address,
                self.source.fetch_snapshot,
                DetectionMethod.EVENT_LISTENER,
                timeout=self.config.fetch_timeout,
            )
        except (ValidationError, MalformedData, OutOfOrderSnapshot) as e:
            if isinstance(e, OutOfOrderSnapshot):
                kind = "out_of_order"
            elif isinstance(e, MalformedData):
                kind = "malformed"
            else:
                kind = "validation"
            logger.warning(f"[거부] {pool_address} (리스너) {kind}: {e}")
            if self.stats:
                self.stats.record_rejection(pool_address, kind, str(e), time.time())
        except (SourceUnavailable, asyncio.TimeoutError) as e:
            logger.error(f"[소스 실패] {pool_address} (리스너): {e}")
            if self.stats:
                self.stats.record_source_failure(pool_address, str(e) or "timeout", time.time())
        finally:
            # 사이클 도중 감시 해제되었으면 다시 저장된 기준 스냅샷 제거
            if not self.is_watched(pool_address):
                self.detector.store.remove(pool_address)

    def _reset_reconnect_delay(self) -> None:
        self.reconnect_delay = 1.0

    def _increase_reconnect_delay(self) -> None:
        self.reconnect_delay = min(self.reconnect_delay * 2, 60.0)
