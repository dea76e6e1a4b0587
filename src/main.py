"""메인 애플리케이션 - 모든 모듈 초기화 및 동시 실행"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

from src.config import Config
from src.detection_stats import DetectionStats
from src.detector import WhaleActivityDetector
from src.errors import ConfigurationError
from src.event_buffer import EventBuffer
from src.flusher import Flusher
from src.listener import AccountChangeListener
from src.scheduler import PollingScheduler
from src.snapshot_source import HttpSnapshotSource
from src.snapshot_store import SnapshotStore
from src.telegram_reporter import TelegramReporter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger(__name__)


async def main(config_path: str = "config.yaml") -> int:
    """모든 모듈 초기화 및 asyncio.gather 로 동시 실행"""
    config = Config.from_yaml(config_path)
    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"[설정 오류] {e}")
        return 1

    # 디렉토리 생성 (로깅 FileHandler 보다 먼저)
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        Path(config.log_dir) / "monitor.log", encoding="utf-8"
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logging.getLogger().addHandler(file_handler)

    # 모듈 초기화
    stats = DetectionStats(config.log_dir)
    telegram = TelegramReporter(config)
    buffer = EventBuffer(config.max_buffer_mb)
    flusher = Flusher(config, buffer)
    store = SnapshotStore()
    detector = WhaleActivityDetector(config, store, stats, sinks=[buffer, telegram])
    source = HttpSnapshotSource(config)
    scheduler = PollingScheduler(config, source, detector, stats, telegram)
    listener = AccountChangeListener(config, source, detector, stats,
                                     pools=lambda: scheduler.watched_pools)
    scheduler.listener = listener

    await telegram.send_startup_report(config, len(scheduler.watched_pools))
    logger.info("=== 고래 활동 감지 시스템 시작 ===")
    logger.info(f"감시 풀: {scheduler.watched_pools}")
    logger.info(f"폴링 주기: {config.poll_interval}초")

    async def periodic_log():
        while True:
            await asyncio.sleep(config.flush_interval)
            await stats.write_periodic_log()

    async def daily_summary():
        while True:
            await asyncio.sleep(86400)
            summary = await stats.write_daily_summary()
            await telegram.send_daily_report(summary)

    async def force_flush_monitor():
        while True:
            await asyncio.sleep(30)
            if buffer.needs_force_flush():
                logger.warning("[강제 플러시] 메모리 임계값 초과")
                await flusher.flush_now()

    tasks = [
        scheduler.run(),
        listener.run(),
        flusher.run(),
        periodic_log(),
        daily_summary(),
        force_flush_monitor(),
    ]

    # graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler():
        logger.info("종료 신호 수신, 마지막 플러시 실행 중...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    gathered = asyncio.gather(*tasks, return_exceptions=True)

    await asyncio.wait(
        [asyncio.create_task(shutdown_event.wait()), gathered],
        return_when=asyncio.FIRST_COMPLETED,
    )

    await scheduler.stop()
    gathered.cancel()
    try:
        await gathered
    except asyncio.CancelledError:
        pass
    # 리스너 감지 사이클 정리 후 마지막 플러시
    await listener.shutdown(config.fetch_timeout)

    logger.info("마지막 플러시 실행...")
    try:
        await flusher.flush_now()
    except Exception as e:
        logger.error(f"마지막 플러시 실패: {e}")

    logger.info("=== 시스템 종료 ===")
    return 0


if __name__ == "__main__":
    config_file = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    sys.exit(asyncio.run(main(config_file)))
