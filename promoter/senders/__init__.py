"""
消息发送模块
"""
from .base import Notifier
from .dingtalk import DingtalkNotifier, sign
from .wechat import WechatNotifier

__all__ = [
    "Notifier",
    "DingtalkNotifier",
    "WechatNotifier",
    "sign",
]
