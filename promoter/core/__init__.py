"""
核心功能模块
"""
from .config import Config, Receiver, load_config, parse_config
from .errors import (
    BadData,
    ConfigError,
    DeliveryFailed,
    NotifyError,
    PromoterError,
    ReceiverNotFound,
)
from .logging_config import setup_logging, get_logger
from .models import KV, Alert, AlertImage, Alerts, Data
from .utils import convert_to_cst, redact_url, url_to_link

__all__ = [
    "Config",
    "Receiver",
    "load_config",
    "parse_config",
    "BadData",
    "ConfigError",
    "DeliveryFailed",
    "NotifyError",
    "PromoterError",
    "ReceiverNotFound",
    "setup_logging",
    "get_logger",
    "KV",
    "Alert",
    "AlertImage",
    "Alerts",
    "Data",
    "convert_to_cst",
    "redact_url",
    "url_to_link",
]
