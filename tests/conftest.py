"""
测试公共桩：HTTP 会话、Prometheus 数据源、对象存储
"""
import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from promoter.core import parse_config
from promoter.plotters import Series
from promoter.templates import Template


class FakeResponse:
    def __init__(self, body: Any = None, status_code: int = 200, text: Optional[str] = None,
                 url: str = ""):
        self._body = body
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(body)
        self.url = url

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}")


class FakeSession:
    """记录请求并按顺序返回预设响应"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            return FakeResponse({"errcode": 0, "errmsg": "ok"})
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def posts(self):
        return [c for c in self.calls if c["method"] == "POST"]

    def gets(self):
        return [c for c in self.calls if c["method"] == "GET"]

    def close(self):
        self.closed = True


class StubMetrics:
    def __init__(self, series: Optional[List[Series]] = None, error: Optional[Exception] = None):
        self.series = series if series is not None else []
        self.error = error
        self.queries = []
        self.closed = False

    def query_range(self, query, start, end, step):
        self.queries.append({"query": query, "start": start, "end": end, "step": step})
        if self.error is not None:
            raise self.error
        return list(self.series)

    def close(self):
        self.closed = True


class StubStore:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.objects = []

    def put(self, content, name="", content_type="image/png"):
        if self.error is not None:
            raise self.error
        self.objects.append((content, name, content_type))
        return f"http://bucket.example.com/pictures/{len(self.objects)}.png"


@pytest.fixture
def raw_config() -> Dict[str, Any]:
    return {
        "global": {
            "prometheus_url": "http://prometheus:9090",
            "dingtalk_api_token": "dt-token",
            "dingtalk_api_secret": "dt-secret",
            "wechat_api_secret": "wx-secret",
            "wechat_api_corp_id": "wx-corp",
        },
        "receivers": [
            {
                "name": "ops",
                "dingtalk_config": {"message_type": "markdown"},
            },
            {
                "name": "both",
                "dingtalk_config": {"message_type": "markdown"},
                "wechat_config": {"message_type": "text", "agent_id": "1000002", "to_user": "@all"},
            },
            {"name": "empty"},
        ],
    }


@pytest.fixture
def config(raw_config):
    return parse_config(raw_config)


@pytest.fixture
def template():
    return Template.from_globs(external_url="http://promoter.example.com")


@pytest.fixture
def cpu_series():
    return [
        Series(
            labels={"__name__": "cpu", "instance": "a:9100"},
            points=[(1700000000.0 + 60 * i, 80.0 + i) for i in range(20)],
        ),
        Series(
            labels={"__name__": "cpu", "instance": "b:9100"},
            points=[(1700000000.0 + 60 * i, 10.0 + i) for i in range(20)],
        ),
    ]


@pytest.fixture
def webhook_payload():
    return {
        "receiver": "ops",
        "status": "firing",
        "alerts": [
            {
                "status": "firing",
                "labels": {"alertname": "HighCPU"},
                "generatorURL": "http://x/graph?g0.expr=cpu%20%3E%2090",
            }
        ],
    }
