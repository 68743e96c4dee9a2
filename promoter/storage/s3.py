"""
S3 兼容对象存储

趋势图上传到 pictures/ 目录，设为公共可读，返回公网 URL 供消息里直接引用。
"""
import time
import uuid
from typing import Optional, Protocol
from urllib.parse import urlsplit

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import S3Config
from ..core.errors import StoreError
from ..core.logging_config import get_logger

logger = get_logger()

KEY_PREFIX = "pictures/"


class Store(Protocol):
    def put(self, content: bytes, name: str, content_type: str) -> str:
        ...


def object_key(name: str = "") -> str:
    """pictures/<随机 hex>_<unix 秒>.png，name 仅用于取扩展名"""
    ext = ".png"
    if name and "." in name:
        ext = name[name.rindex("."):]
    return f"{KEY_PREFIX}{uuid.uuid4().hex}_{int(time.time())}{ext}"


class S3Store:
    """基于 boto3 的 S3 兼容存储"""

    def __init__(self, config: S3Config, client=None):
        if not config.bucket:
            raise StoreError("未配置 s3.bucket")
        self.config = config
        self.bucket = config.bucket
        endpoint = config.endpoint or ""
        if endpoint and "://" not in endpoint:
            endpoint = f"{'https' if config.secure else 'http'}://{endpoint}"
        self._endpoint_url = endpoint or None
        self._endpoint_host = urlsplit(endpoint).netloc if endpoint else ""
        self._client = client or self._create_client()

    def _create_client(self):
        kwargs = {
            "region_name": self.config.region or None,
            "config": BotoConfig(s3={"addressing_style": "virtual"}),
        }
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url
        if self.config.access_key and self.config.secret_key:
            kwargs["aws_access_key_id"] = self.config.access_key
            kwargs["aws_secret_access_key"] = self.config.secret_key
        return boto3.client("s3", **kwargs)

    def public_url(self, key: str) -> str:
        if self.config.public_url:
            return f"{self.config.public_url.rstrip('/')}/{key}"
        return f"http://{self.bucket}.{self._endpoint_host}/{key}"

    def put(self, content: bytes, name: str = "", content_type: str = "image/png",
            key: Optional[str] = None) -> str:
        """
        上传对象

        Returns:
            公网访问 URL

        Raises:
            StoreError: 上传失败
        """
        key = key or object_key(name)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ACL="public-read",
                ContentLength=len(content),
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StoreError(f"上传对象存储失败: {e}") from e
        url = self.public_url(key)
        logger.debug(f"图片已上传: {url}")
        return url
