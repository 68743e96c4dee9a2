import threading
import time

import pytest

from conftest import FakeResponse, FakeSession
from promoter.core import Data
from promoter.core.config import WechatConfig, WechatTemplateCard
from promoter.core.errors import NotifyError
from promoter.senders import WechatNotifier
from promoter.senders.wechat import TOKEN_TTL_SECONDS


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def token_response(token="T1"):
    return FakeResponse({"errcode": 0, "access_token": token, "expires_in": 7200})


@pytest.fixture
def data():
    return Data.from_dict({
        "receiver": "dev",
        "status": "firing",
        "alerts": [{"status": "firing", "labels": {"alertname": "DiskFull"}}],
        "groupLabels": {"alertname": "DiskFull"},
        "commonLabels": {"alertname": "DiskFull"},
    })


@pytest.fixture
def conf():
    return WechatConfig(
        api_secret="wx-secret",
        corp_id="wx-corp",
        message="{{ receiver }}",
        agent_id="1000002",
        to_user="@all",
    )


def make(conf, template, responses, clock=None):
    session = FakeSession(responses)
    notifier = WechatNotifier(conf, template, session=session, clock=clock or Clock())
    return notifier, session


def test_token_fetched_once_and_reused(conf, template, data):
    notifier, session = make(conf, template, [token_response("T1")])
    notifier.notify(data)
    notifier.notify(data)
    gets = session.gets()
    assert len(gets) == 1
    assert gets[0]["url"] == "https://qyapi.weixin.qq.com/cgi-bin/gettoken"
    assert gets[0]["params"] == {"corpsecret": "wx-secret", "corpid": "wx-corp"}
    posts = session.posts()
    assert len(posts) == 2
    assert all(p["params"] == {"access_token": "T1"} for p in posts)
    assert posts[0]["url"] == "https://qyapi.weixin.qq.com/cgi-bin/message/send"


def test_token_refetched_after_ttl(conf, template, data):
    clock = Clock()
    notifier, session = make(conf, template, [token_response("T1")], clock=clock)
    assert notifier.access_token() == "T1"
    clock.now += TOKEN_TTL_SECONDS - 1
    assert notifier.access_token() == "T1"
    clock.now += 2
    session.responses.append(token_response("T2"))
    assert notifier.access_token() == "T2"
    assert len(session.gets()) == 2


def test_expired_token_invalidated(conf, template, data):
    notifier, session = make(conf, template, [
        token_response("T1"),
        FakeResponse({"errcode": 42001, "errmsg": "access_token expired"}),
        token_response("T2"),
    ])
    with pytest.raises(NotifyError) as exc:
        notifier.notify(data)
    assert exc.value.retryable
    assert "access_token expired" in str(exc.value)

    notifier.notify(data)
    assert len(session.gets()) == 2
    assert session.posts()[-1]["params"] == {"access_token": "T2"}


def test_invalidate_keeps_newer_token(conf, template):
    notifier, _ = make(conf, template, [token_response("T2")])
    assert notifier.access_token() == "T2"
    notifier.invalidate_token("T1")
    assert notifier.access_token() == "T2"


def test_empty_token_is_not_retryable(conf, template, data):
    notifier, session = make(conf, template, [
        FakeResponse({"errcode": 40013, "errmsg": "invalid corpid"}),
    ])
    with pytest.raises(NotifyError) as exc:
        notifier.notify(data)
    assert not exc.value.retryable
    assert "invalid corpid" in str(exc.value)
    assert session.posts() == []


def test_other_errcode_is_not_retryable(conf, template, data):
    notifier, _ = make(conf, template, [
        token_response(),
        FakeResponse({"errcode": 81013, "errmsg": "user invalid"}),
    ])
    with pytest.raises(NotifyError) as exc:
        notifier.notify(data)
    assert not exc.value.retryable
    assert exc.value.channel == "wechat"


def test_text_message_body(conf, template, data):
    notifier, _ = make(conf, template, [])
    msg = notifier.build_message(data)
    assert msg == {
        "touser": "@all",
        "agentid": "1000002",
        "safe": "0",
        "msgtype": "text",
        "text": {"content": "dev"},
    }


def test_markdown_message_body(template, data):
    conf = WechatConfig(message_type="markdown", message="**{{ status }}**")
    notifier, _ = make(conf, template, [])
    msg = notifier.build_message(data)
    assert msg["markdown"] == {"content": "**firing**"}
    assert "touser" not in msg


def test_template_card_body(template, data):
    conf = WechatConfig(
        message_type="template_card",
        template_card=WechatTemplateCard(
            title="{{ common_labels.alertname }}",
            description="{{ alerts | length }} 条",
            image_url="http://img/1.png",
        ),
    )
    notifier, _ = make(conf, template, [])
    card = notifier.build_message(data)["template_card"]
    assert card["card_type"] == "news_notice"
    assert card["main_title"] == {"title": "DiskFull", "desc": "1 条"}
    assert card["image_text_area"] == {
        "type": 1,
        "url": "http://promoter.example.com",
        "title": "DiskFull",
        "desc": "1 条",
        "image_url": "http://img/1.png",
    }


def test_news_body(template, data):
    conf = WechatConfig(
        message_type="news",
        template_card=WechatTemplateCard(title="{{ status }}", description="d", image_url="p"),
    )
    notifier, _ = make(conf, template, [])
    articles = notifier.build_message(data)["news"]["articles"]
    assert articles == [{
        "title": "firing",
        "description": "d",
        "url": "http://promoter.example.com",
        "picurl": "p",
    }]


def test_token_fetched_again_after_failed_fetch(conf, template, data):
    notifier, session = make(conf, template, [
        FakeResponse({"errcode": -1, "errmsg": "system busy"}),
        token_response("T1"),
    ])
    with pytest.raises(NotifyError):
        notifier.notify(data)
    notifier.notify(data)
    assert len(session.gets()) == 2
    assert session.posts()[0]["params"] == {"access_token": "T1"}


class SlowTokenSession(FakeSession):
    """gettoken 响应变慢，放大并发刷新的竞争窗口"""

    def get(self, url, **kwargs):
        time.sleep(0.05)
        self.calls.append({"method": "GET", "url": url, **kwargs})
        return token_response("T1")


def test_concurrent_notify_fetches_token_once(conf, template, data):
    session = SlowTokenSession()
    notifier = WechatNotifier(conf, template, session=session, clock=Clock())
    workers = 8
    barrier = threading.Barrier(workers)
    errors = []

    def send():
        barrier.wait()
        try:
            notifier.notify(data)
        except NotifyError as e:
            errors.append(e)

    threads = [threading.Thread(target=send) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert len(session.gets()) == 1
    posts = session.posts()
    assert len(posts) == workers
    assert all(p["params"] == {"access_token": "T1"} for p in posts)
