"""폴링 스케줄러 모듈 - 풀별 주기적 조회 + 감지, 실패 시 지수 백오프"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING

from src.errors import MalformedData, OutOfOrderSnapshot, SourceUnavailable, ValidationError
from src.models import DetectionMethod, WhaleActivityEvent

if TYPE_CHECKING:
    from src.config import Config
    from src.detection_stats import DetectionStats
    from src.detector import WhaleActivityDetector
    from src.listener import AccountChangeListener
    from src.snapshot_source import PoolSnapshotSource
    from src.telegram_reporter import TelegramReporter

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 60.0
FAILURE_ALERT_THRESHOLD = 3  # 연속 실패 N회째에 알림


class PollingScheduler:
    """감시 대상 풀마다 독립 루프를 돌려 조회 → 감지 사이클 실행"""

    def __init__(self, config: Config, source: PoolSnapshotSource,
                 detector: WhaleActivityDetector, stats: DetectionStats | None = None,
                 telegram: TelegramReporter | None = None):
        self.config = config
        self.source = source
        self.detector = detector
        self.stats = stats
        self.telegram = telegram
        self.listener: AccountChangeListener | None = None
        self._tasks: dict[str, asyncio.Task | None] = {}
        self._failures: dict[str, int] = defaultdict(int)
        self._running = False
        self._stopped = asyncio.Event()
        for pool in config.pools:
            self.watch(pool)

    @property
    def watched_pools(self) -> list[str]:
        return list(self._tasks)

    def watch(self, pool_address: str) -> bool:
        """감시 풀 추가. 이미 감시 중이면 False."""
        if pool_address in self._tasks:
            return False
        self._tasks[pool_address] = None
        if self._running:
            self._start(pool_address)
        if self.listener is not None:
            self.listener.subscribe(pool_address)
        logger.info(f"[스케줄러] 감시 추가: {pool_address}")
        return True

    def unwatch(self, pool_address: str) -> bool:
        """감시 풀 제거. 루프 취소 및 기준 스냅샷 삭제."""
        if pool_address not in self._tasks:
            return False
        task = self._tasks.pop(pool_address)
        if task is not None:
            task.cancel()
        self._failures.pop(pool_address, None)
        if self.listener is not None:
            self.listener.unsubscribe(pool_address)
        self.detector.store.remove(pool_address)
        logger.info(f"[스케줄러] 감시 제거: {pool_address}")
        return True

    @staticmethod
    def compute_retry_delay(attempt: int) -> float:
        """지수 백오프: min(2^N, 60)"""
        return min(2 ** attempt, MAX_RETRY_DELAY)

    async def poll_once(self, pool_address: str) -> WhaleActivityEvent | None:
        """한 풀 1회 사이클. 소스 실패(타임아웃 포함)는 SourceUnavailable 로 전파."""
        try:
            event = await self.detector.run_cycle(
                pool_address,
                self.source.fetch_snapshot,
                DetectionMethod.POLLING,
                timeout=self.config.fetch_timeout,
            )
        except ValidationError as e:
            self._record_rejection(pool_address, "validation", e)
            return None
        except MalformedData as e:
            self._record_rejection(pool_address, "malformed", e)
            return None
        except OutOfOrderSnapshot as e:
            self._record_rejection(pool_address, "out_of_order", e)
            return None
        except asyncio.TimeoutError as e:
            err = SourceUnavailable(
                f"{pool_address}: fetch timed out after {self.config.fetch_timeout}s"
            )
            await self._record_failure(pool_address, err)
            raise err from e
        except SourceUnavailable as e:
            await self._record_failure(pool_address, e)
            raise

        self._failures[pool_address] = 0
        return event

    async def poll_all(self) -> list[WhaleActivityEvent]:
        """감시 중인 모든 풀 동시 1회 사이클, 발생한 이벤트 목록 반환"""
        results = await asyncio.gather(
            *(self._poll_quietly(p) for p in self.watched_pools)
        )
        return [e for e in results if e is not None]

    async def run(self) -> None:
        """풀별 폴링 루프 시작 후 stop() 까지 대기"""
        self._running = True
        self._stopped.clear()
        for pool in self.watched_pools:
            self._start(pool)
        logger.info(
            f"[스케줄러] 시작: {len(self._tasks)}개 풀, 주기 {self.config.poll_interval}초"
        )
        await self._stopped.wait()

    async def stop(self) -> None:
        """모든 풀 루프 취소"""
        self._running = False
        tasks = [t for t in self._tasks.values() if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for pool in self._tasks:
            self._tasks[pool] = None
        self._stopped.set()
        logger.info("[스케줄러] 중지")

    def _start(self, pool_address: str) -> None:
        self._tasks[pool_address] = asyncio.create_task(
            self._poll_loop(pool_address), name=f"poll:{pool_address}"
        )

    async def _poll_loop(self, pool_address: str) -> None:
        while True:
            delay = self.config.poll_interval
            try:
                await self.poll_once(pool_address)
            except SourceUnavailable:
                delay = min(
                    self.compute_retry_delay(self._failures[pool_address]),
                    self.config.poll_interval,
                )
                logger.info(f"[스케줄러] {pool_address} {delay}초 후 재시도")
            except Exception:
                logger.exception(f"[스케줄러] {pool_address} 사이클 예외")
            await asyncio.sleep(delay)

    async def _poll_quietly(self, pool_address: str) -> WhaleActivityEvent | None:
        try:
            return await self.poll_once(pool_address)
        except SourceUnavailable:
            return None

    def _record_rejection(self, pool_address: str, kind: str, error: Exception) -> None:
        logger.warning(f"[거부] {pool_address} {kind}: {error}")
        if self.stats:
            self.stats.record_rejection(pool_address, kind, str(error), time.time())

    async def _record_failure(self, pool_address: str, error: Exception) -> None:
        self._failures[pool_address] += 1
        attempt = self._failures[pool_address]
        logger.error(f"[소스 실패] {pool_address} (연속 {attempt}회): {error}")
        if self.stats:
            self.stats.record_source_failure(pool_address, str(error), time.time())
        if self.telegram and attempt == FAILURE_ALERT_THRESHOLD:
            await self.telegram.send_source_failure_alert(pool_address, str(error), attempt)
