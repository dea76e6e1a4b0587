"""Parquet 이벤트 저장 모듈 - 주기적 플러시, 원자적 저장, 체크섬 기록"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from src.config import Config
    from src.event_buffer import EventBuffer

logger = logging.getLogger(__name__)


class Flusher:
    """버퍼에 쌓인 고래 활동 이벤트를 풀별 Parquet 파일로 저장"""

    def __init__(self, config: Config, buffer: EventBuffer):
        self.config = config
        self.buffer = buffer
        self.data_dir = Path(config.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    async def run(self) -> None:
        """주기적 플러시 루프"""
        while True:
            await asyncio.sleep(self.config.flush_interval)
            try:
                await self.flush_now()
            except Exception as e:
                logger.error(f"[플러시 에러] {e}")

    async def flush_now(self) -> list[Path]:
        """즉시 플러시 실행, 생성된 파일 경로 반환"""
        data = await self.buffer.flush()
        now = datetime.now(timezone.utc)
        created_files = []

        for pool_address, records in data.items():
            if not records:
                continue
            fpath = self.data_dir / self._generate_filename(pool_address, now)
            count = self._save_parquet(records, fpath)
            created_files.append(fpath)
            self.record_checksum(fpath, self.compute_checksum(fpath), count,
                                 fpath.stat().st_size)
            logger.info(f"[저장] {fpath} ({count}건)")

        return created_files

    @staticmethod
    def _generate_filename(pool_address: str, timestamp: datetime) -> str:
        """파일명 생성: {POOL}_whale_events_{YYYYMMDD}_{HHMM}.parquet"""
        return f"{pool_address}_whale_events_{timestamp.strftime('%Y%m%d_%H%M')}.parquet"

    @staticmethod
    def _save_parquet(records: list[dict], filepath: Path) -> int:
        """Parquet 저장 (snappy 압축), 레코드 수 반환. 임시 파일 rename 으로 원자적 저장."""
        df = pd.DataFrame(records)
        tmp_fd, tmp_path = tempfile.mkstemp(suffix=".parquet.tmp", dir=filepath.parent)
        os.close(tmp_fd)
        try:
            df.to_parquet(tmp_path, index=False, compression="snappy")
            os.replace(tmp_path, filepath)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return len(df)

    @staticmethod
    def compute_checksum(filepath: Path) -> str:
        """SHA-256 해시 계산"""
        h = hashlib.sha256()
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                h.update(chunk)
        return h.hexdigest()

    def record_checksum(self, filepath: Path, sha256: str,
                        record_count: int, file_size: int) -> None:
        """checksums.json 에 체크섬 기록 추가"""
        checksum_file = self.data_dir / "checksums.json"
        entries = []
        if checksum_file.exists():
            with open(checksum_file, "r") as f:
                entries = json.load(f)
        entries.append({
            "filename": filepath.name,
            "sha256": sha256,
            "record_count": record_count,
            "file_size": file_size,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        with open(checksum_file, "w") as f:
            json.dump(entries, f, indent=2)
