"""
工具函数模块
"""
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo

from dateutil import parser as dateutil_parser

from .logging_config import get_logger

logger = get_logger()

DEFAULT_TIMEZONE = "Asia/Shanghai"

REDACTED = "<redacted>"

# Go 零值时间，Alertmanager 对 firing 告警的 endsAt 常填这个
_ZERO_TIME_PREFIX = "0001-01-01"

# URL 查询参数里需要脱敏的键
_SENSITIVE_PARAMS = ("access_token", "sign", "corpsecret", "corpid", "timestamp")
_SENSITIVE_PARAM_RE = re.compile(
    r"(?P<key>(?:%s))=[^&\s'\")]*" % "|".join(_SENSITIVE_PARAMS)
)


def parse_time(value: Any) -> Optional[datetime]:
    """
    解析 Alertmanager 时间字段，统一返回带时区的 datetime

    空值与 Go 零值时间（0001-01-01T00:00:00Z）返回 None；无时区按 UTC 处理。
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.startswith(_ZERO_TIME_PREFIX):
            return None
        # 纳秒精度需截断到微秒
        text = re.sub(r"(\.\d{6})\d+", r"\1", text)
        dt = dateutil_parser.isoparse(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    if dt.year <= 1:
        return None
    return dt


def format_time(value: Any) -> str:
    """序列化为 RFC3339，None 保持 Go 零值格式以便与 Alertmanager 对齐"""
    if value is None:
        return "0001-01-01T00:00:00Z"
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def convert_to_cst(value: Any, tz: str = DEFAULT_TIMEZONE) -> str:
    """
    将时间转换为北京时间并格式化为 YYYY-MM-DD HH:MM:SS

    支持 datetime 与以下字符串格式：
    - 2024-01-15T10:30:00Z
    - 2024-01-15T10:30:00.123Z
    - 2026-02-10T01:47:51.122980105+08:00（纳秒精度）
    无法解析时原样返回，模板里不因时间格式报错。
    """
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    else:
        try:
            dt = parse_time(value)
        except (ValueError, OverflowError):
            logger.warning(f"无法解析时间格式: {value}，返回原值")
            return str(value)
        if dt is None:
            return ""
    return dt.astimezone(ZoneInfo(tz)).strftime("%Y-%m-%d %H:%M:%S")


def url_to_link(text: str) -> str:
    """
    将文本中的 URL 转换为 Markdown 链接
    用于钉钉/企业微信 markdown 消息
    """
    if not text or not isinstance(text, str):
        return text

    url_pattern = r"(https?://[^\s\)]+)"

    def replace_url(match):
        url_clean = match.group(1).rstrip(".,;:!?)")
        return f"[{url_clean}]({url_clean})"

    return re.sub(url_pattern, replace_url, text)


def normalize_proxy_url(url: str) -> str:
    """
    将 socks5:// 转为 socks5h://，使 DNS 在代理端解析
    """
    if url and url.startswith("socks5://") and not url.startswith("socks5h://"):
        return "socks5h://" + url[len("socks5://") :]
    return url


def redact_url(text: str, url: Optional[str] = None) -> str:
    """
    从错误信息中抹掉请求 URL

    requests 的异常信息里会带上完整 URL（含 access_token / sign），
    先整体替换已知 URL 及其 path?query 片段，再兜底替换敏感参数值。
    """
    if not text:
        return text
    if url:
        parts = urlsplit(url)
        path_query = parts.path + ("?" + parts.query if parts.query else "")
        for fragment in (url, path_query):
            if fragment and fragment != "/":
                text = text.replace(fragment, REDACTED)
    return _SENSITIVE_PARAM_RE.sub(lambda m: f"{m.group('key')}={REDACTED}", text)
