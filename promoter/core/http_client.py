"""
出站 HTTP 会话

每个通知渠道 / 数据源持有自己的 Session，复用连接池。
不在适配器层做自动重试，失败直接交给调用方。
"""
import requests
from requests.adapters import HTTPAdapter

from .. import __version__
from .config import HTTPConfig

USER_AGENT = f"Promoter/{__version__}"


def build_session(http_config: HTTPConfig) -> requests.Session:
    """
    创建带连接池的 HTTP 会话

    Args:
        http_config: 超时 / 代理 / TLS 校验设置

    Returns:
        requests.Session 实例
    """
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=10,  # 连接池大小
        pool_maxsize=20,  # 最大连接数
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    session.verify = http_config.verify
    if http_config.proxies:
        session.proxies.update(http_config.proxies)
    return session
