from datetime import datetime, timezone

from promoter.core import convert_to_cst, redact_url, url_to_link
from promoter.core.utils import normalize_proxy_url, parse_time


def test_parse_time_zero_value():
    assert parse_time("0001-01-01T00:00:00Z") is None
    assert parse_time("") is None
    assert parse_time(None) is None


def test_parse_time_nanoseconds():
    dt = parse_time("2024-01-15T02:30:00.123456789Z")
    assert dt == datetime(2024, 1, 15, 2, 30, 0, 123456, tzinfo=timezone.utc)


def test_parse_time_naive_is_utc():
    assert parse_time("2024-01-15T02:30:00").tzinfo == timezone.utc


def test_convert_to_cst():
    assert convert_to_cst("2024-01-15T02:30:00Z") == "2024-01-15 10:30:00"


def test_redact_url():
    url = "https://oapi.dingtalk.com/robot/send?access_token=abc&sign=xyz"
    msg = f"HTTPSConnectionPool: Max retries exceeded with url: /robot/send?access_token=abc&sign=xyz ({url})"
    redacted = redact_url(msg, "https://oapi.dingtalk.com/robot/send")
    assert "abc" not in redacted
    assert "xyz" not in redacted


def test_redact_url_without_url():
    assert redact_url("corpsecret=s3cr3t&corpid=c1") == "corpsecret=<redacted>&corpid=<redacted>"


def test_normalize_proxy_url():
    assert normalize_proxy_url("socks5://p:1080") == "socks5h://p:1080"
    assert normalize_proxy_url("http://p:3128") == "http://p:3128"


def test_url_to_link():
    assert url_to_link("see http://x/y") == "see [http://x/y](http://x/y)"
