"""
Prometheus 区间查询

调用 /api/v1/query_range 取回矩阵结果，转成 Series 列表供出图使用。
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple

import requests

from ..core.config import HTTPConfig
from ..core.errors import MetricsQueryError
from ..core.logging_config import get_logger
from ..core.utils import redact_url
from ..core.http_client import build_session

logger = get_logger()

QUERY_RANGE_PATH = "/api/v1/query_range"


@dataclass
class Series:
    """一条时间序列：标签 + (unix 秒, 值) 点列"""
    labels: Dict[str, str] = field(default_factory=dict)
    points: List[Tuple[float, float]] = field(default_factory=list)

    def __str__(self) -> str:
        name = self.labels.get("__name__", "")
        pairs = ", ".join(
            f'{k}="{v}"' for k, v in sorted(self.labels.items()) if k != "__name__"
        )
        return f"{name}{{{pairs}}}"


class MetricsSource(Protocol):
    def query_range(
        self, query: str, start: datetime, end: datetime, step: timedelta
    ) -> List[Series]:
        ...

    def close(self) -> None:
        ...


def _format_step(step: timedelta) -> str:
    """
    步长按浮点秒数下发，例如 "12"、"18.07"

    带单位的写法（"18.07s"）只接受整数，小数步长会被 Prometheus 以 400 拒绝。
    """
    seconds = max(step.total_seconds(), 1.0)
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def _parse_point(item) -> Optional[Tuple[float, float]]:
    if not isinstance(item, (list, tuple)) or len(item) < 2:
        return None
    try:
        ts = float(item[0])
        val = float(item[1])
    except (TypeError, ValueError):
        return None
    return ts, val


class PrometheusSource:
    """基于 requests 的 Prometheus 客户端"""

    def __init__(self, base_url: str, http_config: Optional[HTTPConfig] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.http_config = http_config or HTTPConfig()
        self.session = session or build_session(self.http_config)

    def close(self) -> None:
        self.session.close()

    def query_range(
        self, query: str, start: datetime, end: datetime, step: timedelta
    ) -> List[Series]:
        """
        执行区间查询

        Returns:
            序列列表，可能为空

        Raises:
            MetricsQueryError: 网络错误、HTTP 错误、响应不是 success 或结果不是 matrix
        """
        url = f"{self.base_url}{QUERY_RANGE_PATH}"
        params = {
            "query": query,
            "start": f"{start.timestamp():.3f}",
            "end": f"{end.timestamp():.3f}",
            "step": _format_step(step),
        }
        logger.debug(f"请求 Prometheus query_range: query={query}, step={params['step']}")
        try:
            response = self.session.get(
                url,
                params=params,
                timeout=self.http_config.timeout,
                proxies=self.http_config.proxies,
                verify=self.http_config.verify,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise MetricsQueryError(f"Prometheus 查询失败: {redact_url(str(e), url)}") from e
        except ValueError as e:
            raise MetricsQueryError(f"Prometheus 响应不是合法 JSON: {e}") from e

        if not isinstance(payload, dict) or payload.get("status") != "success":
            error = payload.get("error") if isinstance(payload, dict) else None
            raise MetricsQueryError(f"Prometheus 查询未成功: {error or payload}")
        data = payload.get("data") or {}
        if data.get("resultType") != "matrix":
            raise MetricsQueryError(f"Prometheus 返回的结果类型不是 matrix: {data.get('resultType')}")

        series = []
        for raw in data.get("result") or []:
            if not isinstance(raw, dict):
                continue
            points = [p for p in (_parse_point(v) for v in raw.get("values") or []) if p]
            points = [p for p in points if not math.isinf(p[1])]
            series.append(Series(
                labels={str(k): str(v) for k, v in (raw.get("metric") or {}).items()},
                points=sorted(points),
            ))
        return series
