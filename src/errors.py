"""예외 정의 모듈 - 스냅샷 검증, 순서, 데이터 소스, 설정 오류"""


class WhaleMonitorError(Exception):
    """모든 감지 엔진 예외의 기반 클래스"""


class ValidationError(WhaleMonitorError):
    """스냅샷이 잘못됨 (음수 유동성, 뒤집힌 bin 경계, 필수 필드 누락 등).

    사이클은 중단되고 저장된 기준 스냅샷은 변경되지 않는다.
    """


class OutOfOrderSnapshot(WhaleMonitorError):
    """기준 스냅샷보다 같거나 이른 timestamp의 스냅샷 (중복/지연 도착)"""

    def __init__(self, pool_address: str, baseline_ts: int, snapshot_ts: int):
        self.pool_address = pool_address
        self.baseline_ts = baseline_ts
        self.snapshot_ts = snapshot_ts
        super().__init__(
            f"{pool_address}: snapshot ts={snapshot_ts} <= baseline ts={baseline_ts}"
        )


class SourceUnavailable(WhaleMonitorError):
    """데이터 소스 조회 실패 (네트워크, HTTP 에러, 타임아웃). 재시도는 스케줄러 책임."""


class MalformedData(WhaleMonitorError):
    """데이터 소스 응답을 스냅샷으로 변환할 수 없음"""


class ConfigurationError(WhaleMonitorError):
    """시작 시점 설정 오류 - 감지 시작 전에 즉시 실패"""
