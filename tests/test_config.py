import pytest
import yaml

from promoter.core import load_config, parse_config
from promoter.core.config import (
    DEFAULT_DINGTALK_API_URL,
    DEFAULT_WECHAT_API_URL,
    SECRET_TOKEN,
)
from promoter.core.errors import ConfigError


def test_defaults_and_inheritance(config):
    assert config.global_.metric_resolution == 100
    assert config.global_.image_failure_policy == "degrade"
    ops = config.get_receiver("ops")
    assert ops.dingtalk_config.api_url == DEFAULT_DINGTALK_API_URL
    assert ops.dingtalk_config.api_token == "dt-token"
    assert ops.dingtalk_config.api_secret == "dt-secret"
    assert ops.wechat_config is None
    both = config.get_receiver("both")
    assert both.wechat_config.api_url == DEFAULT_WECHAT_API_URL
    assert both.wechat_config.corp_id == "wx-corp"
    assert config.get_receiver("empty").dingtalk_config is None
    assert config.receiver_names == ["ops", "both", "empty"]


def test_duplicate_receiver_name(raw_config):
    raw_config["receivers"].append({"name": "ops"})
    with pytest.raises(ConfigError, match="not unique"):
        parse_config(raw_config)


def test_missing_receiver_name(raw_config):
    raw_config["receivers"].append({"dingtalk_config": {}})
    with pytest.raises(ConfigError, match="missing name"):
        parse_config(raw_config)


def test_missing_dingtalk_token(raw_config):
    del raw_config["global"]["dingtalk_api_token"]
    with pytest.raises(ConfigError, match="Dingtalk ApiToken"):
        parse_config(raw_config)


def test_dingtalk_secret_is_optional(raw_config):
    del raw_config["global"]["dingtalk_api_secret"]
    cfg = parse_config(raw_config)
    assert cfg.get_receiver("ops").dingtalk_config.api_secret == ""


def test_missing_wechat_corp_id(raw_config):
    del raw_config["global"]["wechat_api_corp_id"]
    with pytest.raises(ConfigError, match="CorpID"):
        parse_config(raw_config)


def test_wechat_api_url_gets_trailing_slash(raw_config):
    raw_config["receivers"][1]["wechat_config"]["api_url"] = "https://wx.example.com/cgi-bin"
    cfg = parse_config(raw_config)
    assert cfg.get_receiver("both").wechat_config.api_url == "https://wx.example.com/cgi-bin/"


@pytest.mark.parametrize("section,message_type", [
    ("dingtalk_config", "template_card"),
    ("wechat_config", "link"),
])
def test_invalid_message_type(raw_config, section, message_type):
    raw_config["receivers"][1][section]["message_type"] = message_type
    with pytest.raises(ConfigError):
        parse_config(raw_config)


def test_template_card_required(raw_config):
    raw_config["receivers"][1]["wechat_config"]["message_type"] = "template_card"
    with pytest.raises(ConfigError, match="template_card"):
        parse_config(raw_config)


def test_unknown_key_rejected(raw_config):
    raw_config["global"]["bogus"] = 1
    with pytest.raises(ConfigError, match="bogus"):
        parse_config(raw_config)


def test_bad_url_rejected(raw_config):
    raw_config["global"]["prometheus_url"] = "ftp://prom"
    with pytest.raises(ConfigError):
        parse_config(raw_config)


def test_bad_image_policy(raw_config):
    raw_config["global"]["image_failure_policy"] = "ignore"
    with pytest.raises(ConfigError):
        parse_config(raw_config)


def test_unknown_timezone(raw_config):
    raw_config["global"]["timezone"] = "Mars/Olympus"
    with pytest.raises(ConfigError, match="Mars/Olympus"):
        parse_config(raw_config)


def test_default_timezone(config):
    assert config.global_.timezone == "Asia/Shanghai"


def test_to_dict_redacts_secrets(config):
    out = config.to_dict()
    assert out["global"]["dingtalk_api_token"] == SECRET_TOKEN
    dingtalk = out["receivers"][0]["dingtalk_config"]
    assert dingtalk["api_token"] == SECRET_TOKEN
    assert dingtalk["api_secret"] == SECRET_TOKEN
    assert "dt-token" not in str(out)
    assert config.to_dict(redact=False)["global"]["dingtalk_api_token"] == "dt-token"


def test_load_config_resolves_template_paths(tmp_path, raw_config, monkeypatch):
    raw_config["templates"] = ["templates/*.j2", "/abs/*.j2"]
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw_config), encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg.templates == (str(tmp_path.resolve() / "templates/*.j2"), "/abs/*.j2")
    assert cfg.source_path == str(path)

    monkeypatch.setenv("CONFIG_FILE", str(path))
    assert load_config().receiver_names == cfg.receiver_names


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_config_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("global: [", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))
