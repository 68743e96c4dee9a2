import pytest

from promoter.core.errors import ChartRenderError
from promoter.plotters import Series, render_chart
from promoter.plotters.prometheus_plotter import _latest_value, _legend_label

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_render_single_series(cpu_series):
    image = render_chart(cpu_series[:1], 90.0, ">")
    assert image.startswith(PNG_MAGIC)


def test_render_multiple_series_below_threshold(cpu_series):
    image = render_chart(cpu_series, 5.0, "<", tz="UTC")
    assert image.startswith(PNG_MAGIC)


def test_render_with_gap():
    s = Series(labels={"instance": "a"}, points=[(0.0, 1.0), (60.0, float("nan")), (120.0, 3.0)])
    assert render_chart([s], 2.0, ">").startswith(PNG_MAGIC)


def test_render_flat_series_at_level():
    s = Series(labels={}, points=[(0.0, 5.0), (60.0, 5.0)])
    assert render_chart([s], 5.0, ">").startswith(PNG_MAGIC)


def test_no_series():
    with pytest.raises(ChartRenderError):
        render_chart([], 1.0, ">")


def test_only_nan_points():
    s = Series(labels={}, points=[(0.0, float("nan"))])
    with pytest.raises(ChartRenderError):
        render_chart([s], 1.0, ">")


def test_latest_value_uses_plot_order(cpu_series):
    assert _latest_value(cpu_series) == 29.0
    nan_tail = Series(points=[(0.0, 7.0), (60.0, float("nan"))])
    assert _latest_value([nan_tail]) == 7.0


def test_legend_label():
    s = Series(labels={"__name__": "cpu", "instance": "a", "job": "node"})
    assert _legend_label(s) == 'instance="a", job="node"'


def test_unknown_timezone(cpu_series):
    with pytest.raises(ChartRenderError, match="Mars/Olympus"):
        render_chart(cpu_series, 90.0, ">", tz="Mars/Olympus")
