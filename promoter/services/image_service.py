"""
图片生成服务

为每条告警画趋势图：从 generatorURL 取出 g0.expr，拆成若干阈值比较，
逐个查询 Prometheus、出图、上传对象存储，把图片地址追加到 alert.images。
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from ..core.errors import ChartRenderError, EnrichError, MetricsQueryError, StoreError
from ..core.logging_config import get_logger
from ..core.models import KV, Alert, AlertImage, Data
from ..core.utils import DEFAULT_TIMEZONE
from ..plotters import PlotExpr, decompose, render_chart
from ..plotters.prometheus_source import MetricsSource, Series
from ..storage import Store

logger = get_logger()

EXPR_PARAM = "g0.expr"
MIN_WINDOW = timedelta(minutes=20)
MIN_STEP = timedelta(seconds=1)

POLICY_DEGRADE = "degrade"
POLICY_ABORT = "abort"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def alert_expr(generator_url: str) -> str:
    """从 generatorURL 中取出告警表达式，没有则返回空串"""
    if not generator_url:
        return ""
    values = parse_qs(urlparse(generator_url).query).get(EXPR_PARAM)
    return values[0] if values else ""


def select_series(series: List[Series], labels: KV) -> List[Series]:
    """
    挑出与告警标签一致的那条序列

    序列里出现的告警标签必须全部同值，且至少出现一个；按返回顺序取第一条。
    一条都不满足时返回全部序列。
    """
    for s in series:
        common = [k for k in s.labels if k in labels]
        if common and all(s.labels[k] == labels[k] for k in common):
            logger.debug(f"命中告警对应的序列: {s}")
            return [s]
    logger.debug(f"没有与告警标签一致的序列，使用全部 {len(series)} 条")
    return series


class ImageService:
    """告警出图服务"""

    def __init__(
        self,
        metrics: Optional[MetricsSource],
        store: Optional[Store],
        metric_resolution: int = 100,
        tz: str = DEFAULT_TIMEZONE,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.metrics = metrics
        self.store = store
        self.metric_resolution = max(int(metric_resolution), 1)
        self.tz = tz
        self._now = now

    @property
    def enabled(self) -> bool:
        return self.metrics is not None and self.store is not None

    def plot_time_range(self, alert: Alert) -> Tuple[datetime, timedelta]:
        """
        计算查询窗口，返回 (结束时刻, 窗口长度)

        开始时间晚于结束时间（或没有结束时间）时以开始时间为准、窗口 20 分钟；
        否则以结束时间为准、窗口为持续时长且不少于 20 分钟。结束时刻不晚于当前时间。
        """
        now = self._now()
        starts_at, ends_at = alert.starts_at, alert.ends_at
        if starts_at is None:
            anchor, window = now, MIN_WINDOW
        elif ends_at is None or starts_at > ends_at:
            anchor, window = starts_at, MIN_WINDOW
        else:
            anchor, window = ends_at, max(ends_at - starts_at, MIN_WINDOW)
        return min(anchor, now), window

    def step_for(self, window: timedelta) -> timedelta:
        return max(window / self.metric_resolution, MIN_STEP)

    def _plot(self, expr: PlotExpr, alert: Alert, end: datetime, window: timedelta) -> Optional[AlertImage]:
        series = self.metrics.query_range(expr.formula, end - window, end, self.step_for(window))
        if not series:
            logger.info(f"告警 {alert.name} 表达式 {expr.formula} 查询结果为空，跳过出图")
            return None
        selected = select_series(series, alert.labels)
        image = render_chart(selected, expr.level, expr.operator, self.tz)
        url = self.store.put(image, "alert.png", "image/png")
        logger.debug(f"告警 {alert.name} 趋势图已上传: {url}")
        return AlertImage(url=url, title=str(expr))

    def enrich(self, alert: Alert) -> None:
        """
        为单条告警出图，图片追加到 alert.images

        Raises:
            EnrichError: 查询、绘图或上传任一步失败
        """
        if not self.enabled:
            return
        expr = alert_expr(alert.generator_url)
        if not expr:
            logger.debug(f"告警 {alert.name} 的 generatorURL 不含 {EXPR_PARAM}，跳过出图")
            return
        plots = decompose(expr)
        if not plots:
            logger.debug(f"告警 {alert.name} 表达式不含可出图的阈值比较: {expr}")
            return

        end, window = self.plot_time_range(alert)
        for plot in plots:
            try:
                image = self._plot(plot, alert, end, window)
            except (MetricsQueryError, ChartRenderError, StoreError) as e:
                raise EnrichError(f"告警 {alert.name} 出图失败 ({plot}): {e}") from e
            if image is not None:
                alert.images.append(image)

    def enrich_data(self, data: Data, policy: str = POLICY_DEGRADE) -> None:
        """
        为整批告警出图

        degrade 策略下单条告警出图失败只记日志，该告警按无图发送；
        abort 策略下直接抛出 EnrichError。
        """
        if not self.enabled:
            return
        for alert in data.alerts:
            before = list(alert.images)
            try:
                self.enrich(alert)
            except EnrichError as e:
                if policy == POLICY_ABORT:
                    raise
                alert.images = before
                logger.warning(f"{e}，按无图发送")
