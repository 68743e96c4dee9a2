from datetime import datetime, timezone

import pytest

from promoter.core import AlertImage, Data
from promoter.core.errors import TemplateLoadError, TemplateRenderError
from promoter.templates import MODE_HTML, MODE_TEXT, Template


@pytest.fixture
def data():
    d = Data.from_dict({
        "receiver": "ops",
        "status": "firing",
        "alerts": [{
            "status": "firing",
            "labels": {"alertname": "HighCPU", "instance": "a:9100"},
            "annotations": {"summary": "cpu <high>"},
            "startsAt": "2024-01-15T02:30:00Z",
        }],
        "groupLabels": {"alertname": "HighCPU"},
    })
    d.alerts[0].images.append(AlertImage(url="http://img/1.png", title="cpu > 90.00"))
    return d


def test_render_receiver(template, data):
    assert template.render_text("{{ receiver }}", data) == "ops"


def test_empty_body_renders_empty(template, data):
    assert template.render_text("", data) == ""
    assert template.render(MODE_HTML, "", data) == ""


def test_missing_key_renders_empty(template, data):
    assert template.render_text("[{{ common_labels.nothing }}]", data) == "[]"
    assert template.render_text("[{{ missing.deeper.still }}]", data) == "[]"


def test_type_error_raises_render_error(template, data):
    with pytest.raises(TemplateRenderError):
        template.render_text('{{ 1 + "a" }}', data)


def test_snippet_syntax_error_raises_render_error(template, data):
    with pytest.raises(TemplateRenderError):
        template.render_text("{% if %}", data)


def test_html_mode_escapes(template, data):
    body = "{{ alerts[0].annotations.summary }}"
    assert template.render(MODE_TEXT, body, data) == "cpu <high>"
    assert template.render(MODE_HTML, body, data) == "cpu &lt;high&gt;"


def test_unknown_mode(template, data):
    with pytest.raises(TemplateRenderError):
        template.render("pdf", "x", data)


def test_builtin_title(template, data):
    title = template.render_text('{% include "dingtalk.default.title.j2" %}', data)
    assert title == "[FIRING:1] HighCPU"


def test_builtin_content_has_image_and_time(template, data):
    content = template.render_text('{% include "dingtalk.default.content.j2" %}', data)
    assert "![cpu > 90.00](http://img/1.png)" in content
    assert "2024-01-15 10:30:00" in content
    assert "instance=a:9100" in content
    assert "alertname=" not in content


def test_card_image_picks_first_url(template, data):
    data.alerts[0].images.append(AlertImage(url="http://img/2.png", title="x"))
    out = template.render_text('{% include "wechat.default.card_image.j2" %}', data)
    assert out.strip() == "http://img/1.png"


def test_filters(template, data):
    assert template.render_text('{{ "a-b-c" | re_replace_all("-", "_") }}', data) == "a_b_c"
    assert template.render_text("{{ promoter_url }}", data) == "http://promoter.example.com"
    assert template.render_text(
        "{{ group_labels.sorted_pairs() | join_pairs }}", data
    ) == "alertname=HighCPU"


def test_user_templates_override_builtin(tmp_path, data):
    (tmp_path / "dingtalk.default.title.j2").write_text("custom {{ receiver }}", encoding="utf-8")
    (tmp_path / "extra.j2").write_text("extra", encoding="utf-8")
    tmpl = Template.from_globs([str(tmp_path / "*.j2")])
    assert tmpl.render_text('{% include "dingtalk.default.title.j2" %}', data) == "custom ops"
    assert "extra.j2" in tmpl.names


def test_later_glob_wins(tmp_path, data):
    first = tmp_path / "a"
    second = tmp_path / "b"
    first.mkdir()
    second.mkdir()
    (first / "x.j2").write_text("first", encoding="utf-8")
    (second / "x.j2").write_text("second", encoding="utf-8")
    tmpl = Template.from_globs([str(first / "*.j2"), str(second / "*.j2")], load_builtin=False)
    assert tmpl.render_text('{% include "x.j2" %}', data) == "second"


def test_snippet_does_not_enter_base_set(template, data):
    before = list(template.names)
    template.render_text("{% set x = 1 %}{{ x }}", data)
    assert template.names == before


def test_bad_glob_is_load_error():
    with pytest.raises(TemplateLoadError):
        Template.from_globs(["templates/[abc.j2"])


def test_bad_template_file_is_load_error(tmp_path):
    (tmp_path / "broken.j2").write_text("{% for %}", encoding="utf-8")
    with pytest.raises(TemplateLoadError):
        Template.from_globs([str(tmp_path / "*.j2")])


def test_cst_filter_uses_timezone(data):
    tmpl = Template.from_globs(load_builtin=False, timezone="UTC")
    assert tmpl.render_text("{{ alerts[0].starts_at | cst }}", data) == "2024-01-15 02:30:00"
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert tmpl.render_text("{{ t | cst }}", {"t": now}) == "2024-01-01 00:00:00"
