"""
告警处理服务层

按接收器名称分发 webhook：解码 → 出图 → 依次调用该接收器下的每个通知渠道 → 汇总失败。
接收器到通知渠道的映射在每次加载配置时整体重建，构建完成后以一次引用赋值替换，
处理中的请求始终使用它开始时拿到的那份快照。
"""
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core.config import Config, Receiver
from ..core.errors import BadData, DeliveryFailed, EnrichError, NotifyError, ReceiverNotFound
from ..core.logging_config import get_logger
from ..core.models import Data
from ..plotters import PrometheusSource
from ..plotters.prometheus_source import MetricsSource
from ..senders import DingtalkNotifier, Notifier, WechatNotifier
from ..storage import S3Store, Store
from ..templates import Template
from .image_service import ImageService

logger = get_logger()


@dataclass(frozen=True)
class Snapshot:
    """一次配置加载对应的全部运行期对象，只读"""
    config: Config
    template: Template
    image_service: ImageService
    notifiers: Dict[str, Tuple[Notifier, ...]] = field(default_factory=dict)


def build_notifiers(receiver: Receiver, template: Template) -> Tuple[Notifier, ...]:
    """按配置顺序（钉钉在前，企业微信在后）创建接收器的通知渠道"""
    notifiers: List[Notifier] = []
    if receiver.dingtalk_config is not None:
        notifiers.append(DingtalkNotifier(receiver.dingtalk_config, template))
    if receiver.wechat_config is not None:
        notifiers.append(WechatNotifier(receiver.wechat_config, template))
    return tuple(notifiers)


class AlertService:
    """告警分发服务"""

    def __init__(
        self,
        config: Config,
        template: Template,
        metrics: Optional[MetricsSource] = None,
        store: Optional[Store] = None,
    ):
        """
        Args:
            config: 配置
            template: 已加载的模板集
            metrics: 指定数据源（不传则按 global.prometheus_url 创建）
            store: 指定对象存储（不传则按 s3 配置创建）
        """
        self._metrics_override = metrics
        self._store_override = store
        self._write_lock = threading.Lock()
        self._snapshot: Optional[Snapshot] = None
        self.update(config, template)

    def _build_image_service(self, config: Config) -> ImageService:
        glob = config.global_
        metrics = self._metrics_override
        if metrics is None and glob.prometheus_url:
            metrics = PrometheusSource(glob.prometheus_url, glob.http_config)
        store = self._store_override
        if store is None and config.s3 is not None:
            store = S3Store(config.s3)
        if metrics is None or store is None:
            logger.info("未同时配置 prometheus_url 与 s3，告警不附带趋势图")
        return ImageService(
            metrics,
            store,
            metric_resolution=glob.metric_resolution,
            tz=glob.timezone,
        )

    def update(self, config: Config, template: Template) -> None:
        """用新配置整体重建并替换快照"""
        notifiers = {rcv.name: build_notifiers(rcv, template) for rcv in config.receivers}
        snapshot = Snapshot(
            config=config,
            template=template,
            image_service=self._build_image_service(config),
            notifiers=notifiers,
        )
        with self._write_lock:
            old, self._snapshot = self._snapshot, snapshot
        logger.info(f"接收器已加载，共 {len(notifiers)} 个: {', '.join(notifiers) or '(无)'}")
        if old is not None:
            self._release(old)

    def _release(self, snap: Snapshot) -> None:
        """
        关闭旧快照自己创建的 HTTP 会话

        仍持有旧快照的请求照常完成：Session 关闭只清空连接池，之后的请求会新建连接。
        构造时注入的数据源由调用方管理，不在这里关闭。
        """
        for notifiers in snap.notifiers.values():
            for notifier in notifiers:
                notifier.close()
        metrics = snap.image_service.metrics
        if metrics is not None and metrics is not self._metrics_override:
            metrics.close()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def config(self) -> Config:
        return self._snapshot.config

    def receiver_names(self) -> List[str]:
        return self._snapshot.config.receiver_names

    def notifiers(self, name: str) -> Tuple[Notifier, ...]:
        return self._snapshot.notifiers.get(name, ())

    @staticmethod
    def decode(raw_body: Union[bytes, str, Dict[str, Any]]) -> Data:
        if isinstance(raw_body, (bytes, str)):
            try:
                raw_body = json.loads(raw_body)
            except ValueError as e:
                raise BadData(f"webhook 负载不是合法 JSON: {e}") from e
        return Data.from_dict(raw_body)

    def handle_webhook(
        self,
        receiver: str,
        raw_body: Union[bytes, str, Dict[str, Any]],
        request_id: str = "-",
    ) -> Data:
        """
        处理一次 webhook

        Returns:
            出图后的 Data（已发送）

        Raises:
            ReceiverNotFound: 接收器未配置
            BadData: 负载非法，或 abort 策略下出图失败
            DeliveryFailed: 至少一个渠道发送失败，errors 按配置顺序排列
        """
        snap = self._snapshot
        notifiers = snap.notifiers.get(receiver)
        if notifiers is None:
            raise ReceiverNotFound(f"接收器不存在: {receiver}")

        data = self.decode(raw_body)
        alert_summary = ", ".join(a.name or "?" for a in data.alerts)
        logger.info(f"[{request_id}] 接收器 {receiver} 收到 {len(data.alerts)} 条告警 [{alert_summary}]")

        try:
            snap.image_service.enrich_data(data, snap.config.global_.image_failure_policy)
        except EnrichError as e:
            raise BadData(str(e)) from e

        errors: List[NotifyError] = []
        for notifier in notifiers:
            try:
                notifier.notify(data)
            except NotifyError as e:
                logger.error(f"[{request_id}] 接收器 {receiver} 发送失败: {e} (retryable={e.retryable})")
                errors.append(e)

        if errors:
            raise DeliveryFailed(errors, receiver=receiver)
        if notifiers:
            channels = ", ".join(n.channel for n in notifiers)
            logger.info(f"[{request_id}] 接收器 {receiver} 已发送到 {len(notifiers)} 个渠道: {channels}")
        else:
            logger.info(f"[{request_id}] 接收器 {receiver} 未配置任何渠道，跳过发送")
        return data
