"""풀 스냅샷 조회 모듈 - 데이터 서비스 REST API 조회 및 스냅샷 변환"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Protocol

import aiohttp

from src.errors import MalformedData, SourceUnavailable
from src.models import LiquidityBin, PoolSnapshot

if TYPE_CHECKING:
    from src.config import Config

logger = logging.getLogger(__name__)


class PoolSnapshotSource(Protocol):
    """풀 스냅샷 공급자 인터페이스"""

    async def fetch_snapshot(self, pool_address: str) -> PoolSnapshot: ...


def _decimal(value, name: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise MalformedData(f"missing or invalid field: {name}")
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedData(f"non-numeric {name}: {value!r}") from e
    if not d.is_finite():
        raise MalformedData(f"non-finite {name}: {value!r}")
    return d


def parse_snapshot(payload: dict, pool_address: str, recv_time: float) -> PoolSnapshot:
    """데이터 서비스 응답 → PoolSnapshot.

    payload 형식::

        {"address": str, "name": str, "current_price": num, "timestamp": ms?,
         "bins": [{"lower_price": num, "upper_price": num, "liquidity_usd": num}, ...]}

    timestamp 가 없으면 수신 시각을 사용. bin 은 lower_price 기준 정렬.
    """
    if not isinstance(payload, dict):
        raise MalformedData(f"{pool_address}: payload is not an object")

    raw_bins = payload.get("bins")
    if not isinstance(raw_bins, list):
        raise MalformedData(f"{pool_address}: missing bins")

    bins = []
    for i, raw in enumerate(raw_bins):
        if not isinstance(raw, dict):
            raise MalformedData(f"{pool_address}: bins[{i}] is not an object")
        bins.append(LiquidityBin(
            lower_price=_decimal(raw.get("lower_price"), f"bins[{i}].lower_price"),
            upper_price=_decimal(raw.get("upper_price"), f"bins[{i}].upper_price"),
            liquidity_usd=_decimal(raw.get("liquidity_usd"), f"bins[{i}].liquidity_usd"),
        ))
    bins.sort(key=lambda b: b.lower_price)

    ts = payload.get("timestamp")
    if ts is None:
        timestamp = int(recv_time * 1000)
    else:
        try:
            timestamp = int(ts)
        except (TypeError, ValueError) as e:
            raise MalformedData(f"{pool_address}: invalid timestamp {ts!r}") from e

    return PoolSnapshot(
        pool_address=str(payload.get("address") or pool_address),
        pool_name=str(payload.get("name") or ""),
        timestamp=timestamp,
        current_price=_decimal(payload.get("current_price"), "current_price"),
        bins=tuple(bins),
    )


class HttpSnapshotSource:
    """데이터 서비스 REST API 에서 풀 유동성 분포 조회.

    재시도하지 않는다. 실패는 SourceUnavailable 로 올려 스케줄러가 백오프한다.
    """

    def __init__(self, config: Config):
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=config.fetch_timeout)

    def build_url(self, pool_address: str) -> str:
        return self.base_url + self.config.snapshot_path.format(address=pool_address)

    async def fetch_snapshot(self, pool_address: str) -> PoolSnapshot:
        """단일 풀 스냅샷 조회"""
        url = self.build_url(pool_address)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=self.timeout) as resp:
                    if resp.status != 200:
                        raise SourceUnavailable(f"{pool_address}: HTTP {resp.status}")
                    body = await resp.text()
        except SourceUnavailable:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise SourceUnavailable(f"{pool_address}: {type(e).__name__} {e}") from e

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedData(f"{pool_address}: invalid JSON ({e})") from e

        # 일부 엔드포인트는 {"data": {...}} 로 감싸서 반환
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        snapshot = parse_snapshot(payload, pool_address, time.time())
        logger.debug(f"[조회] {pool_address} bins={len(snapshot.bins)} ts={snapshot.timestamp}")
        return snapshot
