"""
数据模型定义

Alertmanager webhook 负载（Data / Alert）以及出图结果（AlertImage）。
Data 同时作为通知模板的渲染上下文。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from .errors import BadData
from .utils import format_time, parse_time

# 告警名标签，排序时固定排第一
ALERT_NAME_LABEL = "alertname"

STATUS_FIRING = "firing"
STATUS_RESOLVED = "resolved"


class Pair(NamedTuple):
    """键值对"""
    name: str
    value: str


class KV(dict):
    """标签 / 注解集合"""

    def sorted_pairs(self) -> List[Pair]:
        """按键排序返回键值对，alertname 始终排在最前"""
        keys = sorted(k for k in self if k != ALERT_NAME_LABEL)
        if ALERT_NAME_LABEL in self:
            keys.insert(0, ALERT_NAME_LABEL)
        return [Pair(k, self[k]) for k in keys]

    def remove(self, keys: Iterable[str]) -> "KV":
        """返回去掉指定键后的副本，原对象不变"""
        drop = set(keys or ())
        return KV({k: v for k, v in self.items() if k not in drop})

    def names(self) -> List[str]:
        return [p.name for p in self.sorted_pairs()]

    def values(self) -> List[str]:  # type: ignore[override]
        return [p.value for p in self.sorted_pairs()]


def _kv(raw: Any, field_name: str) -> KV:
    if raw is None:
        return KV()
    if not isinstance(raw, dict):
        raise BadData(f"{field_name} 必须是对象")
    return KV({str(k): "" if v is None else str(v) for k, v in raw.items()})


@dataclass(frozen=True)
class AlertImage:
    """告警趋势图：公网 URL + 渲染后的表达式标题"""
    url: str
    title: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "title": self.title}


@dataclass
class Alert:
    """单条告警"""
    status: str = ""
    labels: KV = field(default_factory=KV)
    annotations: KV = field(default_factory=KV)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    generator_url: str = ""
    fingerprint: str = ""
    images: List[AlertImage] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> "Alert":
        if not isinstance(raw, dict):
            raise BadData("alerts 中的元素必须是对象")
        try:
            starts_at = parse_time(raw.get("startsAt"))
            ends_at = parse_time(raw.get("endsAt"))
        except (ValueError, OverflowError) as e:
            raise BadData(f"告警时间格式非法: {e}") from e
        return cls(
            status=str(raw.get("status") or ""),
            labels=_kv(raw.get("labels"), "labels"),
            annotations=_kv(raw.get("annotations"), "annotations"),
            starts_at=starts_at,
            ends_at=ends_at,
            generator_url=str(raw.get("generatorURL") or ""),
            fingerprint=str(raw.get("fingerprint") or ""),
        )

    @property
    def name(self) -> str:
        return self.labels.get(ALERT_NAME_LABEL, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": format_time(self.starts_at),
            "endsAt": format_time(self.ends_at),
            "generatorURL": self.generator_url,
            "fingerprint": self.fingerprint,
            "images": [img.to_dict() for img in self.images],
        }


class Alerts(list):
    """告警列表，提供按状态过滤"""

    def firing(self) -> List[Alert]:
        return [a for a in self if a.status == STATUS_FIRING]

    def resolved(self) -> List[Alert]:
        return [a for a in self if a.status == STATUS_RESOLVED]


@dataclass
class Data:
    """
    Alertmanager webhook 负载，同时是模板渲染上下文

    模板里按 snake_case 字段名访问，例如 {{ receiver }}、{{ common_labels.alertname }}。
    """
    receiver: str = ""
    status: str = ""
    alerts: Alerts = field(default_factory=Alerts)
    group_labels: KV = field(default_factory=KV)
    common_labels: KV = field(default_factory=KV)
    common_annotations: KV = field(default_factory=KV)
    external_url: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "Data":
        """
        从 webhook JSON 解码

        Raises:
            BadData: 顶层不是对象、alerts 不是数组或字段类型不符
        """
        if not isinstance(raw, dict):
            raise BadData("webhook 负载必须是 JSON 对象")
        raw_alerts = raw.get("alerts")
        if raw_alerts is None:
            raw_alerts = []
        if not isinstance(raw_alerts, list):
            raise BadData("alerts 必须是数组")
        return cls(
            receiver=str(raw.get("receiver") or ""),
            status=str(raw.get("status") or ""),
            alerts=Alerts(Alert.from_dict(a) for a in raw_alerts),
            group_labels=_kv(raw.get("groupLabels"), "groupLabels"),
            common_labels=_kv(raw.get("commonLabels"), "commonLabels"),
            common_annotations=_kv(raw.get("commonAnnotations"), "commonAnnotations"),
            external_url=str(raw.get("externalURL") or ""),
        )

    def template_context(self) -> Dict[str, Any]:
        """模板上下文：各字段平铺，另带 data 本身"""
        return {
            "data": self,
            "receiver": self.receiver,
            "status": self.status,
            "alerts": self.alerts,
            "group_labels": self.group_labels,
            "common_labels": self.common_labels,
            "common_annotations": self.common_annotations,
            "external_url": self.external_url,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receiver": self.receiver,
            "status": self.status,
            "alerts": [a.to_dict() for a in self.alerts],
            "groupLabels": dict(self.group_labels),
            "commonLabels": dict(self.common_labels),
            "commonAnnotations": dict(self.common_annotations),
            "externalURL": self.external_url,
        }
