"""
配置加载模块（只负责读配置，不初始化日志；日志由 app 在启动时显式初始化）

配置对象加载后不可变，热加载时整体替换。
"""
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError
from .utils import DEFAULT_TIMEZONE, normalize_proxy_url

SECRET_TOKEN = "<secret>"

DEFAULT_WECHAT_API_URL = "https://qyapi.weixin.qq.com/cgi-bin/"
DEFAULT_DINGTALK_API_URL = "https://oapi.dingtalk.com/robot/send"

DINGTALK_MESSAGE_TYPES = ("text", "markdown")
WECHAT_MESSAGE_TYPES = ("text", "markdown", "template_card", "news")

IMAGE_FAILURE_POLICIES = ("degrade", "abort")

# 默认模板均引用内置模板文件（promoter/templates/default/）
DEFAULT_DINGTALK_TITLE = '{% include "dingtalk.default.title.j2" %}'
DEFAULT_DINGTALK_CONTENT = '{% include "dingtalk.default.content.j2" %}'
DEFAULT_WECHAT_MESSAGE = '{% include "wechat.default.message.j2" %}'


def secret_field():
    """标记为敏感字段，to_dict(redact=True) 时输出 <secret>"""
    return field(default="", metadata={"secret": True})


@dataclass(frozen=True)
class HTTPConfig:
    """出站 HTTP 设置"""
    timeout: float = 10.0
    proxy_url: Optional[str] = None
    verify: bool = True

    @property
    def proxies(self) -> Optional[Dict[str, str]]:
        if not self.proxy_url:
            return None
        proxy = normalize_proxy_url(self.proxy_url)
        return {"http": proxy, "https": proxy}


@dataclass(frozen=True)
class DingtalkText:
    title: str = ""
    content: str = ""


@dataclass(frozen=True)
class DingtalkMarkdown:
    title: str = DEFAULT_DINGTALK_TITLE
    text: str = DEFAULT_DINGTALK_CONTENT


@dataclass(frozen=True)
class DingtalkAt:
    at_mobiles: Tuple[str, ...] = ()
    is_at_all: bool = False


@dataclass(frozen=True)
class DingtalkConfig:
    """钉钉机器人渠道配置"""
    api_url: str = DEFAULT_DINGTALK_API_URL
    api_secret: str = secret_field()
    api_token: str = secret_field()
    message_type: str = "text"
    text: Optional[DingtalkText] = None
    markdown: DingtalkMarkdown = field(default_factory=DingtalkMarkdown)
    at: Optional[DingtalkAt] = None
    http_config: HTTPConfig = field(default_factory=HTTPConfig)


@dataclass(frozen=True)
class WechatTemplateCard:
    title: str = ""
    description: str = ""
    image_url: str = ""


@dataclass(frozen=True)
class WechatConfig:
    """企业微信应用消息渠道配置"""
    api_url: str = DEFAULT_WECHAT_API_URL
    api_secret: str = secret_field()
    corp_id: str = secret_field()
    message: str = DEFAULT_WECHAT_MESSAGE
    message_type: str = "text"
    template_card: Optional[WechatTemplateCard] = None
    to_user: str = ""
    to_party: str = ""
    to_tag: str = ""
    agent_id: str = ""
    http_config: HTTPConfig = field(default_factory=HTTPConfig)


@dataclass(frozen=True)
class Receiver:
    """接收器：名称唯一，可同时配置钉钉与企业微信"""
    name: str
    dingtalk_config: Optional[DingtalkConfig] = None
    wechat_config: Optional[WechatConfig] = None


@dataclass(frozen=True)
class S3Config:
    access_key: str = secret_field()
    secret_key: str = secret_field()
    endpoint: str = ""
    region: str = ""
    bucket: str = ""
    # 自定义公网访问前缀，不配置时使用 http://{bucket}.{endpoint}
    public_url: str = ""
    secure: bool = False


@dataclass(frozen=True)
class GlobalConfig:
    """全局配置"""
    prometheus_url: Optional[str] = None
    # 每个查询窗口的采样点数：step = window / metric_resolution
    metric_resolution: int = 100
    timezone: str = DEFAULT_TIMEZONE
    image_failure_policy: str = "degrade"
    http_config: HTTPConfig = field(default_factory=HTTPConfig)
    wechat_api_url: str = DEFAULT_WECHAT_API_URL
    wechat_api_secret: str = secret_field()
    wechat_api_corp_id: str = secret_field()
    dingtalk_api_url: str = DEFAULT_DINGTALK_API_URL
    dingtalk_api_token: str = secret_field()
    dingtalk_api_secret: str = secret_field()


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    external_url: Optional[str] = None


@dataclass(frozen=True)
class LoggingConfig:
    log_dir: str = "logs"
    log_file: str = "promoter.log"
    level: str = "INFO"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


@dataclass(frozen=True)
class Config:
    """顶层配置"""
    global_: GlobalConfig = field(default_factory=GlobalConfig)
    receivers: Tuple[Receiver, ...] = ()
    templates: Tuple[str, ...] = ()
    s3: Optional[S3Config] = None
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source_path: Optional[str] = field(default=None, compare=False)

    def get_receiver(self, name: str) -> Optional[Receiver]:
        for rcv in self.receivers:
            if rcv.name == name:
                return rcv
        return None

    @property
    def receiver_names(self) -> List[str]:
        return [r.name for r in self.receivers]

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """序列化为字典，默认脱敏（用于 /status）"""
        data = _to_dict(self, redact)
        data["global"] = data.pop("global_")
        data.pop("source_path", None)
        return data


def _to_dict(obj: Any, redact: bool) -> Any:
    if is_dataclass(obj):
        out = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            if f.metadata.get("secret") and redact:
                out[f.name] = SECRET_TOKEN if value else None
            else:
                out[f.name] = _to_dict(value, redact)
        return out
    if isinstance(obj, (list, tuple)):
        return [_to_dict(v, redact) for v in obj]
    return obj


def _config_path() -> Path:
    """解析 config.yaml 路径：优先环境变量 CONFIG_FILE，否则为项目根目录下的 config.yaml"""
    env_path = os.environ.get("CONFIG_FILE")
    if env_path:
        return Path(env_path)
    root = Path(__file__).resolve().parent.parent.parent
    return root / "config.yaml"


def _validate_url(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{what} 必须是非空字符串")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https"):
        raise ConfigError(f"{what} 不支持的 scheme {parsed.scheme!r}: {value}")
    if not parsed.netloc:
        raise ConfigError(f"{what} 缺少 host: {value}")
    return value


def _section(raw: Dict, key: str) -> Dict:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} 必须是对象")
    return value


def _reject_unknown(raw: Dict, allowed: Tuple[str, ...], where: str) -> None:
    unknown = sorted(set(raw) - set(allowed))
    if unknown:
        raise ConfigError(f"{where} 存在未知字段: {', '.join(unknown)}")


def _parse_http_config(raw: Any, default: HTTPConfig, where: str) -> HTTPConfig:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}.http_config 必须是对象")
    _reject_unknown(raw, ("timeout", "proxy_url", "verify"), f"{where}.http_config")
    try:
        return replace(
            default,
            **{k: (float(v) if k == "timeout" else v) for k, v in raw.items()},
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}.http_config 非法: {e}") from e


def _parse_global(raw: Dict) -> GlobalConfig:
    _reject_unknown(raw, tuple(f.name for f in fields(GlobalConfig)), "global")
    values = dict(raw)
    values["http_config"] = _parse_http_config(raw.get("http_config"), HTTPConfig(), "global")
    for key in ("prometheus_url", "wechat_api_url", "dingtalk_api_url"):
        if values.get(key) is not None:
            _validate_url(values[key], f"global.{key}")
    try:
        resolution = int(values.get("metric_resolution", 100))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"global.metric_resolution 必须是整数: {e}") from e
    if resolution <= 0:
        raise ConfigError("global.metric_resolution 必须大于 0")
    values["metric_resolution"] = resolution
    tz = str(values.get("timezone") or DEFAULT_TIMEZONE)
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"global.timezone 不是有效的时区: {tz!r}") from e
    values["timezone"] = tz
    policy = values.get("image_failure_policy", "degrade")
    if policy not in IMAGE_FAILURE_POLICIES:
        raise ConfigError(
            f"global.image_failure_policy {policy!r} 不在可选值 {IMAGE_FAILURE_POLICIES} 中"
        )
    for key in ("wechat_api_secret", "wechat_api_corp_id", "dingtalk_api_token", "dingtalk_api_secret"):
        if values.get(key) is not None:
            values[key] = str(values[key])
    return GlobalConfig(**values)


def _parse_dingtalk(raw: Dict, glob: GlobalConfig, where: str) -> DingtalkConfig:
    _reject_unknown(
        raw,
        ("api_url", "api_secret", "api_token", "message_type", "text", "markdown", "at", "http_config"),
        where,
    )
    message_type = raw.get("message_type") or "text"
    if message_type not in DINGTALK_MESSAGE_TYPES:
        raise ConfigError(
            f"{where}: 钉钉消息类型 {message_type!r} 不在可选值 {DINGTALK_MESSAGE_TYPES} 中"
        )

    api_url = raw.get("api_url") or glob.dingtalk_api_url
    if not api_url:
        raise ConfigError("no global Dingtalk URL set")
    _validate_url(api_url, f"{where}.api_url")
    api_token = str(raw.get("api_token") or glob.dingtalk_api_token or "")
    if not api_token:
        raise ConfigError("no global Dingtalk ApiToken set")
    api_secret = str(raw.get("api_secret") or glob.dingtalk_api_secret or "")

    text = None
    if raw.get("text") is not None:
        t = raw["text"]
        if not isinstance(t, dict):
            raise ConfigError(f"{where}.text 必须是对象")
        text = DingtalkText(title=str(t.get("title") or ""), content=str(t.get("content") or ""))

    markdown = DingtalkMarkdown()
    if raw.get("markdown") is not None:
        m = raw["markdown"]
        if not isinstance(m, dict):
            raise ConfigError(f"{where}.markdown 必须是对象")
        markdown = DingtalkMarkdown(
            title=str(m.get("title") or DEFAULT_DINGTALK_TITLE),
            text=str(m.get("text") or DEFAULT_DINGTALK_CONTENT),
        )

    at = None
    if raw.get("at") is not None:
        a = raw["at"]
        if not isinstance(a, dict):
            raise ConfigError(f"{where}.at 必须是对象")
        at = DingtalkAt(
            at_mobiles=tuple(str(m) for m in (a.get("atMobiles") or a.get("at_mobiles") or ())),
            is_at_all=bool(a.get("isAtAll", a.get("is_at_all", False))),
        )

    return DingtalkConfig(
        api_url=api_url,
        api_secret=api_secret,
        api_token=api_token,
        message_type=message_type,
        text=text,
        markdown=markdown,
        at=at,
        http_config=_parse_http_config(raw.get("http_config"), glob.http_config, where),
    )


def _parse_wechat(raw: Dict, glob: GlobalConfig, where: str) -> WechatConfig:
    _reject_unknown(
        raw,
        (
            "api_url", "api_secret", "corp_id", "message", "message_type", "template_card",
            "to_user", "to_party", "to_tag", "agent_id", "http_config",
        ),
        where,
    )
    message_type = raw.get("message_type") or "text"
    if message_type not in WECHAT_MESSAGE_TYPES:
        raise ConfigError(
            f"{where}: 企业微信消息类型 {message_type!r} 不在可选值 {WECHAT_MESSAGE_TYPES} 中"
        )

    api_url = raw.get("api_url") or glob.wechat_api_url
    if not api_url:
        raise ConfigError("no global Wechat URL set")
    _validate_url(api_url, f"{where}.api_url")
    if not api_url.endswith("/"):
        api_url += "/"
    api_secret = str(raw.get("api_secret") or glob.wechat_api_secret or "")
    if not api_secret:
        raise ConfigError("no global Wechat ApiSecret set")
    corp_id = str(raw.get("corp_id") or glob.wechat_api_corp_id or "")
    if not corp_id:
        raise ConfigError("no global Wechat CorpID set")

    card = None
    if raw.get("template_card") is not None:
        c = raw["template_card"]
        if not isinstance(c, dict):
            raise ConfigError(f"{where}.template_card 必须是对象")
        card = WechatTemplateCard(
            title=str(c.get("title") or ""),
            description=str(c.get("desc") or c.get("description") or ""),
            image_url=str(c.get("image_url") or ""),
        )
    if message_type in ("template_card", "news") and card is None:
        raise ConfigError(f"{where}: message_type 为 {message_type} 时必须配置 template_card")

    return WechatConfig(
        api_url=api_url,
        api_secret=api_secret,
        corp_id=corp_id,
        message=str(raw.get("message") or DEFAULT_WECHAT_MESSAGE),
        message_type=message_type,
        template_card=card,
        to_user=str(raw.get("to_user") or ""),
        to_party=str(raw.get("to_party") or ""),
        to_tag=str(raw.get("to_tag") or ""),
        agent_id=str(raw.get("agent_id") or ""),
        http_config=_parse_http_config(raw.get("http_config"), glob.http_config, where),
    )


def _parse_receivers(raw: Any, glob: GlobalConfig) -> Tuple[Receiver, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("receivers 必须是数组")
    receivers = []
    names = set()
    for idx, item in enumerate(raw):
        where = f"receivers[{idx}]"
        if not isinstance(item, dict):
            raise ConfigError(f"{where} 必须是对象")
        _reject_unknown(item, ("name", "dingtalk_config", "wechat_config"), where)
        name = item.get("name")
        if not name:
            raise ConfigError("missing name in receiver")
        name = str(name)
        # 接收器名称需要唯一
        if name in names:
            raise ConfigError(f"notification config name {name!r} is not unique")
        names.add(name)

        dingtalk = wechat = None
        if item.get("dingtalk_config") is not None:
            dingtalk = _parse_dingtalk(_section(item, "dingtalk_config"), glob, f"{where}.dingtalk_config")
        if item.get("wechat_config") is not None:
            wechat = _parse_wechat(_section(item, "wechat_config"), glob, f"{where}.wechat_config")
        receivers.append(Receiver(name=name, dingtalk_config=dingtalk, wechat_config=wechat))
    return tuple(receivers)


def _parse_s3(raw: Any) -> Optional[S3Config]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("s3 必须是对象")
    _reject_unknown(raw, tuple(f.name for f in fields(S3Config)), "s3")
    values = {k: (v if isinstance(v, bool) else str(v)) for k, v in raw.items() if v is not None}
    cfg = S3Config(**values)
    if not cfg.bucket or not cfg.endpoint:
        raise ConfigError("s3 必须配置 bucket 和 endpoint")
    return cfg


def _resolve_templates(raw: Any, base_dir: Optional[Path]) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("templates 必须是数组")
    out = []
    for tpl in raw:
        tpl = str(tpl)
        if base_dir is not None and tpl and not os.path.isabs(tpl):
            tpl = str(base_dir / tpl)
        out.append(tpl)
    return tuple(out)


def parse_config(raw: Any, base_dir: Optional[Path] = None) -> Config:
    """
    从 YAML 解析后的字典构建 Config

    Args:
        raw: yaml.safe_load 的结果
        base_dir: 模板相对路径的基准目录（一般为配置文件所在目录）

    Raises:
        ConfigError: 缺少必填项、取值非法或接收器重名
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("配置文件顶层必须是对象")
    _reject_unknown(raw, ("global", "receivers", "templates", "s3", "server", "logging"), "config")

    glob = _parse_global(_section(raw, "global"))

    server_raw = _section(raw, "server")
    _reject_unknown(server_raw, ("host", "port", "external_url"), "server")
    if server_raw.get("external_url"):
        _validate_url(server_raw["external_url"], "server.external_url")
    try:
        server = ServerConfig(**server_raw)
        if server_raw.get("port") is not None:
            server = replace(server, port=int(server_raw["port"]))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"server 配置非法: {e}") from e

    logging_raw = _section(raw, "logging")
    _reject_unknown(logging_raw, tuple(f.name for f in fields(LoggingConfig)), "logging")

    return Config(
        global_=glob,
        receivers=_parse_receivers(raw.get("receivers"), glob),
        templates=_resolve_templates(raw.get("templates"), base_dir),
        s3=_parse_s3(raw.get("s3")),
        server=server,
        logging=LoggingConfig(**logging_raw),
    )


def load_config(path: Optional[str] = None) -> Config:
    """
    加载配置文件

    Args:
        path: 配置文件路径；不传时读取环境变量 CONFIG_FILE 或项目根目录 config.yaml

    Returns:
        Config: 不可变配置对象
    """
    cfg_path = Path(path) if path else _config_path()
    if not cfg_path.is_file():
        raise FileNotFoundError(f"配置文件不存在: {cfg_path}，可设置环境变量 CONFIG_FILE 指定路径")
    with open(cfg_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件 YAML 解析失败: {e}") from e
    cfg = parse_config(raw, base_dir=cfg_path.resolve().parent)
    return replace(cfg, source_path=str(cfg_path))
