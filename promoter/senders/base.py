"""
通知渠道公共部分

每个渠道实现 notify(data)，失败时抛出 NotifyError。
HTTP 请求统一走这里的 get_json / post_json：超时、代理、URL 脱敏都在这一层处理。
"""
import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from ..core.config import HTTPConfig
from ..core.errors import NotifyError, TemplateRenderError
from ..core.logging_config import get_logger
from ..core.models import Data
from ..core.utils import redact_url
from ..templates import Template

logger = get_logger()


class Notifier(Protocol):
    """通知渠道"""

    channel: str

    def notify(self, data: Data) -> None:
        ...

    def close(self) -> None:
        ...


def make_renderer(tmpl: Template, data: Data, channel: str) -> Callable[[str], str]:
    """
    返回针对同一份 data 的文本渲染函数

    渲染失败立即抛出 NotifyError，不会带着空串继续往下组装消息。
    """

    def render(body: str) -> str:
        try:
            return tmpl.render_text(body, data)
        except TemplateRenderError as e:
            raise NotifyError(str(e), retryable=False, channel=channel) from e

    return render


def _log_request(channel: str, method: str, payload: Optional[Dict[str, Any]] = None) -> None:
    logger.info(f"[{channel}] 请求: {method}")
    if payload is not None and logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"[{channel}] 完整 payload:\n{json.dumps(payload, ensure_ascii=False, indent=2)}")


def _decode(response: requests.Response, channel: str, url: str) -> Dict[str, Any]:
    if not 200 <= response.status_code < 300:
        raise NotifyError(f"unexpected status code {response.status_code}", retryable=True, channel=channel)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"[{channel}] 响应内容: {redact_url(response.text, url)}")
    try:
        body = response.json()
    except ValueError as e:
        raise NotifyError(f"响应不是合法 JSON: {e}", retryable=True, channel=channel) from e
    if not isinstance(body, dict):
        raise NotifyError("响应不是 JSON 对象", retryable=True, channel=channel)
    return body


def get_json(
    session: requests.Session,
    url: str,
    http_config: HTTPConfig,
    channel: str,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    GET 并解析 JSON 响应

    Raises:
        NotifyError: 网络错误 / 非 2xx / 响应非 JSON，均标记为可重试；错误信息已脱敏
    """
    _log_request(channel, "GET")
    try:
        response = session.get(
            url,
            params=params,
            timeout=http_config.timeout,
            proxies=http_config.proxies,
        )
    except requests.RequestException as e:
        # 原异常信息里带完整 URL，不保留异常链
        raise NotifyError(redact_url(str(e), url), retryable=True, channel=channel) from None
    return _decode(response, channel, url)


def post_json(
    session: requests.Session,
    url: str,
    payload: Dict[str, Any],
    http_config: HTTPConfig,
    channel: str,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    POST JSON 并解析 JSON 响应

    Raises:
        NotifyError: 网络错误 / 非 2xx / 响应非 JSON，均标记为可重试；错误信息已脱敏
    """
    _log_request(channel, "POST", payload)
    try:
        response = session.post(
            url,
            params=params,
            json=payload,
            timeout=http_config.timeout,
            proxies=http_config.proxies,
        )
    except requests.RequestException as e:
        # 原异常信息里带完整 URL，不保留异常链
        raise NotifyError(redact_url(str(e), url), retryable=True, channel=channel) from None
    return _decode(response, channel, url)
