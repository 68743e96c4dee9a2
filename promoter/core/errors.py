"""
异常定义

按错误类别划分，HTTP 层根据 kind 映射状态码：
- bad_data: webhook JSON 非法、出图失败（abort 策略下）
- not_found: 接收器不存在
- upstream_delivery: 一个或多个通知渠道发送失败
- internal: 模板渲染、序列化等内部错误
"""
from typing import List, Optional


class PromoterError(Exception):
    """所有业务异常的基类"""

    kind = "internal"


class ConfigError(PromoterError):
    """配置文件缺项或取值非法"""


class TemplateLoadError(PromoterError):
    """模板 glob 非法或模板文件解析失败（加载期致命）"""


class TemplateRenderError(PromoterError):
    """单次渲染失败，只影响当前这次渲染"""


class MetricsQueryError(PromoterError):
    """Prometheus query_range 请求失败或返回格式不符"""


class ChartRenderError(PromoterError):
    """趋势图绘制失败"""


class StoreError(PromoterError):
    """图片上传对象存储失败"""


class EnrichError(PromoterError):
    """告警出图流程中任一步骤失败"""

    kind = "bad_data"


class NotifyError(PromoterError):
    """
    单个通知渠道发送失败

    retryable 仅作标记：当前没有重试调度器消费它，保留给后续使用。
    """

    kind = "upstream_delivery"

    def __init__(self, message: str, retryable: bool = False, channel: str = ""):
        super().__init__(message)
        self.retryable = retryable
        self.channel = channel

    def __str__(self) -> str:
        msg = super().__str__()
        return f"{self.channel}: {msg}" if self.channel else msg


class DispatchError(PromoterError):
    """webhook 分发失败的统一出口"""


class ReceiverNotFound(DispatchError):
    kind = "not_found"


class BadData(DispatchError):
    kind = "bad_data"


class DeliveryFailed(DispatchError):
    """聚合同一接收器下所有失败渠道的错误，顺序与配置顺序一致"""

    kind = "upstream_delivery"

    def __init__(self, errors: List[NotifyError], receiver: Optional[str] = None):
        self.errors = list(errors)
        self.receiver = receiver
        super().__init__("; ".join(str(e) for e in self.errors))

    @property
    def channels(self) -> List[str]:
        return [e.channel for e in self.errors]

    @property
    def retryable(self) -> bool:
        return any(e.retryable for e in self.errors)
