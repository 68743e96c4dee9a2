"""
Prometheus 趋势图生成模块

把 query_range 返回的序列画成 PNG：每条序列一条折线，NaN 处断开；
阈值一侧用半透明红色区域标出，右上角标注最近一次求值。
"""
import math
import re
from datetime import datetime, timezone
from io import BytesIO
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import matplotlib
import matplotlib.dates as mdates

from ..core.errors import ChartRenderError
from ..core.logging_config import get_logger
from ..core.utils import DEFAULT_TIMEZONE
from .plot_expr import DIRECTION_LESS
from .prometheus_source import Series

matplotlib.use("Agg")
from matplotlib.figure import Figure  # noqa: E402

logger = get_logger()

# 画布 20cm x 10cm，四周留 6mm
_CM = 1 / 2.54
FIGURE_SIZE = (20 * _CM, 10 * _CM)
FIGURE_DPI = 100
MARGIN_POINTS = 6 / 10 * _CM * 72

TICK_FONT_SIZE = 8
EVAL_FONT_SIZE = 12
PALETTE = "Dark2"

_THRESHOLD_COLOR = (1.0, 0.0, 0.0, 40 / 255)
_EVAL_BOX_COLOR = (1.0, 1.0, 1.0, 90 / 255)

# 图例只取 name{...} 花括号里的部分
_LABEL_TEXT_RE = re.compile(r"{(.*)}")


def _legend_label(series: Series) -> Optional[str]:
    m = _LABEL_TEXT_RE.search(str(series))
    return m.group(1) if m else None


def _latest_value(series: List[Series]) -> Optional[float]:
    """按绘制顺序最后一个非 NaN 的值"""
    latest = None
    for s in series:
        for _, value in s.points:
            if not math.isnan(value):
                latest = value
    return latest


def render_chart(
    series: List[Series],
    level: float,
    direction: str,
    tz: str = DEFAULT_TIMEZONE,
) -> bytes:
    """
    绘制趋势图

    Args:
        series: 待绘制的序列，调用方保证非空
        level: 阈值
        direction: ">" 时标出阈值以上区域，"<" 时标出阈值以下区域
        tz: 时间轴使用的时区

    Returns:
        PNG 二进制内容

    Raises:
        ChartRenderError: 没有可画的点或 matplotlib 绘制失败
    """
    if not series:
        raise ChartRenderError("没有可绘制的序列")
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ChartRenderError(f"未知时区 {tz}: {e}") from e
    colors = matplotlib.colormaps[PALETTE].colors

    # 不经过 pyplot 全局状态，线程池里并发出图互不影响
    fig = Figure(figsize=FIGURE_SIZE, dpi=FIGURE_DPI)
    ax = fig.add_subplot(1, 1, 1)

    plotted = 0
    show_legend = len(series) > 1
    try:
        for idx, s in enumerate(series):
            if not s.points:
                continue
            # NaN 保留在点列里，matplotlib 会在 NaN 处断线
            xs = [datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(zone) for ts, _ in s.points]
            ys = [value for _, value in s.points]
            label = _legend_label(s) if show_legend else None
            ax.plot(xs, ys, linewidth=1.0, color=colors[idx % len(colors)], label=label)
            plotted += 1

        latest = _latest_value(series)
        if plotted == 0 or latest is None:
            raise ChartRenderError("序列中没有有效数据点")

        # 先把阈值纳入 y 轴范围，再按最终范围画区域
        y_min, y_max = ax.get_ylim()
        y_min, y_max = min(y_min, level), max(y_max, level)
        if y_min == y_max:
            y_min, y_max = y_min - 1, y_max + 1
        ax.set_ylim(y_min, y_max)
        if direction == DIRECTION_LESS:
            ax.axhspan(y_min, level, color=_THRESHOLD_COLOR, linewidth=0)
        else:
            ax.axhspan(level, y_max, color=_THRESHOLD_COLOR, linewidth=0)

        ax.grid(True, linestyle="-", linewidth=0.5, alpha=0.4)
        ax.set_axisbelow(True)
        ax.tick_params(axis="both", labelsize=TICK_FONT_SIZE)
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%H:%M:%S", tz=zone))

        ax.annotate(
            f"latest evaluation: {latest:.2f}",
            xy=(1.0, latest),
            xycoords=("axes fraction", "data"),
            xytext=(-6 / 10 * _CM * 72, 0),
            textcoords="offset points",
            ha="right",
            va="bottom",
            fontsize=EVAL_FONT_SIZE,
            color=(0, 0, 0, 150 / 255),
            bbox={"boxstyle": "square,pad=0.3", "facecolor": _EVAL_BOX_COLOR, "edgecolor": "none"},
        )

        if show_legend:
            ax.legend(loc="lower left", bbox_to_anchor=(0, 1.0), fontsize=TICK_FONT_SIZE,
                      frameon=False, ncol=1)

        fig.tight_layout(pad=MARGIN_POINTS / TICK_FONT_SIZE)
        buffer = BytesIO()
        fig.savefig(buffer, format="png", dpi=FIGURE_DPI)
    except ChartRenderError:
        raise
    except (ValueError, TypeError, OverflowError, RuntimeError) as e:
        raise ChartRenderError(f"趋势图绘制失败: {e}") from e

    logger.debug(f"趋势图绘制完成: {plotted} 条曲线, 阈值 {direction} {level:.2f}")
    return buffer.getvalue()
