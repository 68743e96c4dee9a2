"""
钉钉机器人通知
"""
import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Optional

import requests

from ..core.config import DingtalkConfig
from ..core.errors import NotifyError
from ..core.http_client import build_session
from ..core.logging_config import get_logger
from ..core.models import Data
from ..templates import Template
from .base import make_renderer, post_json

logger = get_logger()

CHANNEL = "dingtalk"


def sign(secret: str, timestamp_ms: int) -> str:
    """加签：base64(HMAC-SHA256(secret, "<毫秒时间戳>\\n<secret>"))"""
    string_to_sign = f"{timestamp_ms}\n{secret}"
    digest = hmac.new(secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


class DingtalkNotifier:
    """钉钉自定义机器人，支持 text / markdown 两种消息"""

    channel = CHANNEL

    def __init__(self, conf: DingtalkConfig, tmpl: Template,
                 session: Optional[requests.Session] = None):
        self.conf = conf
        self.tmpl = tmpl
        self.session = session or build_session(conf.http_config)

    def close(self) -> None:
        self.session.close()

    def build_message(self, data: Data) -> Dict[str, Any]:
        render = make_renderer(self.tmpl, data, self.channel)
        at: Dict[str, Any] = {}
        if self.conf.at is not None:
            if self.conf.at.at_mobiles:
                at["atMobiles"] = list(self.conf.at.at_mobiles)
            if self.conf.at.is_at_all:
                at["isAtAll"] = True

        msg: Dict[str, Any] = {"msgtype": self.conf.message_type}
        if self.conf.message_type == "markdown":
            msg["markdown"] = {
                "title": render(self.conf.markdown.title),
                "text": render(self.conf.markdown.text),
            }
        elif self.conf.text is not None:
            msg["text"] = {
                "title": render(self.conf.text.title),
                "content": render(self.conf.text.content),
            }
        msg["at"] = at
        return msg

    def query_params(self, timestamp_ms: Optional[int] = None) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.conf.api_secret:
            ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
            params["timestamp"] = str(ts)
            params["sign"] = sign(self.conf.api_secret, ts)
        params["access_token"] = self.conf.api_token
        return params

    def notify(self, data: Data) -> None:
        """
        发送一条钉钉消息

        Raises:
            NotifyError: errcode 非 0 不可重试；网络 / HTTP 状态错误可重试
        """
        msg = self.build_message(data)
        body = post_json(
            self.session,
            self.conf.api_url,
            msg,
            self.conf.http_config,
            self.channel,
            params=self.query_params(),
        )
        code = body.get("errcode", 0)
        if code:
            raise NotifyError(str(body.get("errmsg") or f"errcode {code}"), retryable=False, channel=self.channel)
        logger.info(f"[{self.channel}] 消息发送成功")
