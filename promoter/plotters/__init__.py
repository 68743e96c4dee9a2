"""
绘图模块
"""
from .plot_expr import PlotExpr, decompose
from .prometheus_plotter import render_chart
from .prometheus_source import MetricsSource, PrometheusSource, Series

__all__ = [
    "PlotExpr",
    "decompose",
    "render_chart",
    "MetricsSource",
    "PrometheusSource",
    "Series",
]
