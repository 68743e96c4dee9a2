"""
企业微信应用消息通知

access_token 缓存在实例上，2 小时内复用；返回 42001（token 过期）时作废缓存，下次发送重新获取。
同一个实例被所有请求共享，token 的读写都在实例锁内完成。
"""
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from ..core.config import WechatConfig
from ..core.errors import NotifyError
from ..core.http_client import build_session
from ..core.logging_config import get_logger
from ..core.models import Data
from ..templates import Template
from .base import get_json, make_renderer, post_json

logger = get_logger()

CHANNEL = "wechat"

TOKEN_TTL_SECONDS = 2 * 60 * 60
ERRCODE_TOKEN_EXPIRED = 42001


class WechatNotifier:
    """企业微信应用消息，支持 text / markdown / template_card / news"""

    channel = CHANNEL

    def __init__(
        self,
        conf: WechatConfig,
        tmpl: Template,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.conf = conf
        self.tmpl = tmpl
        self.session = session or build_session(conf.http_config)
        self._clock = clock
        self._lock = threading.Lock()
        self._access_token = ""
        self._access_token_at = 0.0

    def _fetch_token(self) -> str:
        body = get_json(
            self.session,
            f"{self.conf.api_url}gettoken",
            self.conf.http_config,
            self.channel,
            params={"corpsecret": self.conf.api_secret, "corpid": self.conf.corp_id},
        )
        token = body.get("access_token") or ""
        if not token:
            raise NotifyError(
                f"获取 access_token 失败，请检查 api_secret / corp_id: {body.get('errmsg') or '空 token'}",
                retryable=False,
                channel=self.channel,
            )
        return str(token)

    def access_token(self) -> str:
        """返回可用的 access_token，缓存为空或超过 2 小时则重新获取"""
        with self._lock:
            stale = self._clock() - self._access_token_at > TOKEN_TTL_SECONDS
            if not self._access_token or stale:
                logger.debug(f"[{self.channel}] 刷新 access_token")
                self._access_token = self._fetch_token()
                self._access_token_at = self._clock()
            return self._access_token

    def invalidate_token(self, token: str) -> None:
        """作废指定 token；缓存已被其它请求刷新时保持不动"""
        with self._lock:
            if self._access_token == token:
                self._access_token = ""

    def close(self) -> None:
        self.session.close()

    def build_message(self, data: Data) -> Dict[str, Any]:
        render = make_renderer(self.tmpl, data, self.channel)
        msg: Dict[str, Any] = {
            "touser": render(self.conf.to_user),
            "toparty": render(self.conf.to_party),
            "totag": render(self.conf.to_tag),
            "agentid": render(self.conf.agent_id),
            "safe": "0",
            "msgtype": self.conf.message_type,
        }
        # 空的收件人字段不下发
        for key in ("touser", "toparty", "totag", "agentid"):
            if not msg[key]:
                del msg[key]

        card = self.conf.template_card
        if self.conf.message_type == "markdown":
            msg["markdown"] = {"content": render(self.conf.message)}
        elif self.conf.message_type == "template_card":
            title = render(card.title)
            desc = render(card.description)
            msg["template_card"] = {
                "card_type": "news_notice",
                "main_title": {"title": title, "desc": desc},
                "image_text_area": {
                    "type": 1,
                    "url": self.tmpl.external_url,
                    "title": title,
                    "desc": desc,
                    "image_url": render(card.image_url),
                },
            }
        elif self.conf.message_type == "news":
            msg["news"] = {
                "articles": [{
                    "title": render(card.title),
                    "description": render(card.description),
                    "url": self.tmpl.external_url,
                    "picurl": render(card.image_url),
                }],
            }
        else:
            msg["text"] = {"content": render(self.conf.message)}
        return msg

    def notify(self, data: Data) -> None:
        """
        发送一条企业微信应用消息

        Raises:
            NotifyError: 42001 可重试并作废 token；其它非 0 错误码不可重试；网络 / HTTP 状态错误可重试
        """
        msg = self.build_message(data)
        token = self.access_token()
        body = post_json(
            self.session,
            f"{self.conf.api_url}message/send",
            msg,
            self.conf.http_config,
            self.channel,
            params={"access_token": token},
        )
        code = body.get("errcode", body.get("code", 0))
        if not code:
            logger.info(f"[{self.channel}] 消息发送成功")
            return
        message = str(body.get("errmsg") or body.get("error") or f"errcode {code}")
        if code == ERRCODE_TOKEN_EXPIRED:
            logger.warning(f"[{self.channel}] access_token 已过期，下次发送时重新获取")
            self.invalidate_token(token)
            raise NotifyError(message, retryable=True, channel=self.channel)
        raise NotifyError(message, retryable=False, channel=self.channel)
