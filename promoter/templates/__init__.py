"""
模板渲染模块
"""
from .template_renderer import MODE_HTML, MODE_TEXT, Template

__all__ = [
    "MODE_HTML",
    "MODE_TEXT",
    "Template",
]
