"""시스템 설정 모듈 - config.yaml 로드, Config/RiskThresholds 데이터클래스, 검증"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from decimal import Decimal
from pathlib import Path

import yaml

from src.errors import ConfigurationError
from src.models import DetectionMethod, RiskLevel


def to_decimal(value: float | int | str) -> Decimal:
    """설정값(float)을 Decimal로 변환 (이진 부동소수점 오차 방지)"""
    return Decimal(str(value))


@dataclass
class RiskThresholds:
    """위험도 분류 임계값"""
    high_change_pct: float = 30.0
    medium_change_pct: float = 10.0
    high_concentration_delta: float = 0.3
    medium_concentration_delta: float = 0.1


@dataclass
class Config:
    """시스템 설정 (config.yaml에서 로드)"""
    pools: list[str] = field(default_factory=list)
    poll_interval: int = 300
    fetch_timeout: float = 10.0
    api_base_url: str = "http://localhost:3000"
    snapshot_path: str = "/api/pools/{address}/liquidity"
    rpc_ws_url: str = ""
    significance_floor_pct: float = 1.0
    per_change_floor_pct: float = 5.0
    top_change_count: int = 3
    risk_thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    detection_method: str = "polling"
    data_dir: str = "./data"
    log_dir: str = "./logs"
    flush_interval: int = 3600
    max_buffer_mb: int = 100
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_min_risk: str = "medium"

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """YAML 파일에서 Config 객체 생성"""
        p = Path(path)
        if not p.exists():
            return cls()
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        kwargs = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        thresholds = kwargs.get("risk_thresholds")
        if isinstance(thresholds, dict):
            kwargs["risk_thresholds"] = RiskThresholds(**{
                k: v for k, v in thresholds.items()
                if k in RiskThresholds.__dataclass_fields__
            })
        elif thresholds is None:
            kwargs.pop("risk_thresholds", None)
        return cls(**kwargs)

    def to_yaml(self, path: str) -> None:
        """Config 객체를 YAML 파일로 저장"""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> dict:
        """Config를 딕셔너리로 변환"""
        return asdict(self)

    def validate(self) -> "Config":
        """잘못된 설정이면 ConfigurationError. 감지 시작 전에 호출."""
        errors = []
        if self.poll_interval <= 0:
            errors.append(f"poll_interval must be positive: {self.poll_interval}")
        if self.fetch_timeout <= 0:
            errors.append(f"fetch_timeout must be positive: {self.fetch_timeout}")
        if self.flush_interval <= 0:
            errors.append(f"flush_interval must be positive: {self.flush_interval}")
        if self.significance_floor_pct < 0:
            errors.append(f"significance_floor_pct < 0: {self.significance_floor_pct}")
        if self.per_change_floor_pct < 0:
            errors.append(f"per_change_floor_pct < 0: {self.per_change_floor_pct}")
        if self.top_change_count < 1:
            errors.append(f"top_change_count < 1: {self.top_change_count}")

        rt = self.risk_thresholds
        for name, value in asdict(rt).items():
            if value < 0:
                errors.append(f"risk_thresholds.{name} < 0: {value}")
        if rt.medium_change_pct > rt.high_change_pct:
            errors.append("risk_thresholds.medium_change_pct > high_change_pct")
        if rt.medium_concentration_delta > rt.high_concentration_delta:
            errors.append("risk_thresholds.medium_concentration_delta > high_concentration_delta")
        if rt.high_concentration_delta > 1:
            errors.append("risk_thresholds.high_concentration_delta > 1")

        if self.detection_method not in {m.value for m in DetectionMethod}:
            errors.append(f"unknown detection_method: {self.detection_method!r}")
        if self.telegram_min_risk not in {r.value for r in RiskLevel}:
            errors.append(f"unknown telegram_min_risk: {self.telegram_min_risk!r}")
        if "{address}" not in self.snapshot_path:
            errors.append("snapshot_path must contain '{address}'")

        if errors:
            raise ConfigurationError("; ".join(errors))
        return self
