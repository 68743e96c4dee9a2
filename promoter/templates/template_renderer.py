"""
模板渲染模块

基础模板集 = 内置模板（promoter/templates/default/*.j2）+ 配置中 templates 各 glob 匹配到的文件，
按声明顺序合并，同名文件后者覆盖前者。基础模板集加载后只读。

每次渲染把调用方给的模板片段编译为匿名模板（不进入共享 loader），
片段里可以用 {% include "xxx.j2" %} 引用基础模板集中的任意模板。
"""
import glob
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from jinja2 import ChainableUndefined, DictLoader, Environment, TemplateError
from markupsafe import Markup

from ..core.errors import TemplateLoadError, TemplateRenderError
from ..core.logging_config import get_logger
from ..core.models import Data
from ..core.utils import DEFAULT_TIMEZONE, convert_to_cst, url_to_link

logger = get_logger()

MODE_TEXT = "text"
MODE_HTML = "html"

BUILTIN_DIR = Path(__file__).resolve().parent / "default"
TEMPLATE_SUFFIX = ".j2"


def _re_replace_all(value: Any, pattern: str, repl: str) -> str:
    return re.sub(pattern, repl, "" if value is None else str(value))


def _join_pairs(pairs: Iterable, sep: str = ", ") -> str:
    """把 sorted_pairs() 的结果拼成 k=v 形式"""
    return sep.join(f"{p[0]}={p[1]}" for p in pairs or ())


def _check_pattern(pattern: str) -> None:
    """glob 语法检查：方括号必须成对"""
    depth = 0
    for ch in pattern:
        if ch == "[":
            depth += 1
        elif ch == "]" and depth:
            depth -= 1
    if depth:
        raise TemplateLoadError(f"模板 glob 语法错误: {pattern}")


class Template:
    """
    文本 / HTML 双模式模板渲染器

    两套 Environment 共用同一份模板源，区别只在是否自动转义。
    缺失的键渲染为空字符串，不会抛错，避免模板笔误导致告警发不出去。
    """

    def __init__(
        self,
        sources: Mapping[str, str],
        external_url: Optional[str] = None,
        timezone: str = DEFAULT_TIMEZONE,
    ):
        self._sources: Dict[str, str] = dict(sources)
        self.external_url = external_url or ""
        self.timezone = timezone
        loader = DictLoader(self._sources)
        self._text_env = self._make_env(loader, autoescape=False)
        self._html_env = self._make_env(loader, autoescape=True)
        # 加载期编译一次，语法错误在这里暴露
        for name in self._sources:
            try:
                self._text_env.get_template(name)
            except TemplateError as e:
                raise TemplateLoadError(f"模板 {name} 解析失败: {e}") from e

    def _make_env(self, loader: DictLoader, autoescape: bool) -> Environment:
        env = Environment(
            loader=loader,
            autoescape=autoescape,
            undefined=ChainableUndefined,
            trim_blocks=True,  # 移除模板标签后的第一个换行
            lstrip_blocks=True,  # 移除模板标签前的空格
        )
        env.filters["cst"] = lambda v: convert_to_cst(v, self.timezone)
        env.filters["re_replace_all"] = _re_replace_all
        env.filters["safe_html"] = Markup
        env.filters["url_to_link"] = url_to_link
        env.filters["join_pairs"] = _join_pairs
        return env

    @classmethod
    def from_globs(
        cls,
        patterns: Iterable[str] = (),
        load_builtin: bool = True,
        external_url: Optional[str] = None,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> "Template":
        """
        加载内置模板与用户模板

        Args:
            patterns: 模板文件 glob 列表，按顺序加载
            load_builtin: 是否加载内置模板
            external_url: 本服务对外地址，模板里以 promoter_url 访问
            timezone: cst 过滤器使用的时区

        Raises:
            TemplateLoadError: glob 非法、文件读取或解析失败
        """
        sources: Dict[str, str] = {}
        if load_builtin:
            for path in sorted(BUILTIN_DIR.glob(f"*{TEMPLATE_SUFFIX}")):
                sources[path.name] = path.read_text(encoding="utf-8")

        for pattern in patterns:
            _check_pattern(pattern)
            for file_path in sorted(glob.glob(pattern)):
                if not os.path.isfile(file_path):
                    continue
                name = os.path.basename(file_path)
                try:
                    with open(file_path, "r", encoding="utf-8") as f:
                        content = f.read()
                except OSError as e:
                    raise TemplateLoadError(f"读取模板文件失败 {file_path}: {e}") from e
                if name in sources:
                    logger.debug(f"模板 {name} 被 {file_path} 覆盖")
                sources[name] = content

        logger.info(f"模板加载完成，共 {len(sources)} 个")
        return cls(sources, external_url=external_url, timezone=timezone)

    @property
    def names(self):
        return sorted(self._sources)

    def _context(self, data: Any) -> Dict[str, Any]:
        if isinstance(data, Data):
            ctx = data.template_context()
        elif isinstance(data, Mapping):
            ctx = dict(data)
        else:
            ctx = {"data": data}
        ctx.setdefault("promoter_url", self.external_url)
        return ctx

    def render(self, mode: str, body: str, data: Any) -> str:
        """
        渲染模板片段

        Args:
            mode: text 或 html
            body: 模板片段，空串直接返回空串
            data: 渲染上下文（Data 或字典）

        Raises:
            TemplateRenderError: 片段语法错误或执行期类型错误
        """
        if not body:
            return ""
        if mode == MODE_HTML:
            env = self._html_env
        elif mode == MODE_TEXT:
            env = self._text_env
        else:
            raise TemplateRenderError(f"未知的渲染模式: {mode}")
        try:
            return env.from_string(body).render(self._context(data))
        except (TemplateError, TypeError, ValueError, ArithmeticError, AttributeError, LookupError) as e:
            raise TemplateRenderError(f"模板渲染失败: {e}") from e

    def render_text(self, body: str, data: Any) -> str:
        return self.render(MODE_TEXT, body, data)

    def render_html(self, body: str, data: Any) -> str:
        return self.render(MODE_HTML, body, data)
