import io
import json
import os
import urllib.error
import urllib.request

import pytest
import yaml

from autoscribe import providers
from autoscribe.errors import TransformError
from autoscribe.models import Credential, CredentialStatus, QueueItem, QueueStatus, TransformResult
from autoscribe.providers import LLMTransformer, MarkdownPublisher, classify_http_status

from fakes import make_item


def _credential(key="sk-test"):
    return Credential(
        credential_id="cred_1",
        provider="p1",
        key_material=key,
        label=None,
        per_minute_limit=0,
        per_day_limit=0,
        current_minute_count=1,
        current_day_count=1,
        minute_window_reset_at="2026-01-05T12:01:00.000000+00:00",
        day_window_reset_at="2026-01-06T12:00:00.000000+00:00",
        status=CredentialStatus.ACTIVE,
        consecutive_failure_count=0,
        last_used_at=None,
        priority=100,
    )


def _payload():
    return make_item(
        "Launch day", url="https://example.com/launch", raw_metadata={"source": "wire"}
    ).payload()


@pytest.fixture
def captured(monkeypatch):
    calls = []
    responses = []

    def fake_request(url, headers, payload, timeout):
        calls.append({"url": url, "headers": headers, "payload": payload, "timeout": timeout})
        return responses.pop(0)

    monkeypatch.setattr(providers, "_http_request", fake_request)
    return calls, responses


@pytest.mark.parametrize(
    ("status", "kind", "transient", "rate_limited"),
    [
        (429, "rate_limited", True, True),
        (503, "transport_error", True, False),
        (408, "transport_error", True, False),
        (400, "provider_rejected", False, False),
        (401, "provider_rejected", False, False),
    ],
)
def test_classify_http_status(status, kind, transient, rate_limited):
    error = classify_http_status(status, "body")
    assert error.kind == kind
    assert error.transient is transient
    assert error.rate_limited is rate_limited


def test_openai_compatible_request(captured):
    calls, responses = captured
    responses.append({"choices": [{"message": {"content": "Rewritten"}, "finish_reason": "stop"}]})
    transformer = LLMTransformer(
        {"p1": {"type": "openai_compatible", "base_url": "http://llm.local/v1/", "model": "m1"}}
    )

    result = transformer.transform(
        _payload(), "p1", _credential(), {"temperature": 0.2, "system_prompt": "Be brief"}
    )

    assert result == TransformResult(
        content="Rewritten", title="Launch day", provider="p1", model="m1", metadata={}
    )
    [call] = calls
    assert call["url"] == "http://llm.local/v1/chat/completions"
    assert call["headers"] == {"Authorization": "Bearer sk-test"}
    assert call["payload"]["temperature"] == 0.2
    assert "system_prompt" not in call["payload"]
    system, user = call["payload"]["messages"]
    assert system == {"role": "system", "content": "Be brief"}
    assert user["content"].startswith("Title: Launch day\nSource: https://example.com/launch")


def test_anthropic_request(captured):
    calls, responses = captured
    responses.append({"content": [{"type": "text", "text": "Article"}], "stop_reason": "end_turn"})

    result = LLMTransformer().transform(_payload(), "anthropic", _credential(), {"max_tokens": 300})

    assert result.content == "Article"
    assert result.model == providers.DEFAULT_MODELS["anthropic"]
    [call] = calls
    assert call["url"] == "https://api.anthropic.com/v1/messages"
    assert call["headers"]["x-api-key"] == "sk-test"
    assert call["payload"]["max_tokens"] == 300
    assert call["payload"]["system"] == providers.DEFAULT_SYSTEM_PROMPT


def test_google_request_puts_key_in_query(captured):
    calls, responses = captured
    responses.append({"candidates": [{"content": {"parts": [{"text": "Hello"}]}}]})

    result = LLMTransformer({"gem": {"type": "google", "model": "gemini-pro"}}).transform(
        _payload(), "gem", _credential("g-key"), {}
    )

    assert result.content == "Hello"
    assert calls[0]["url"].endswith("/models/gemini-pro:generateContent?key=g-key")


@pytest.mark.parametrize(
    ("provider", "response"),
    [
        ("openai_compatible", {"choices": [{"message": {"content": ""}, "finish_reason": "content_filter"}]}),
        ("anthropic", {"content": [], "stop_reason": "refusal"}),
        ("google", {"promptFeedback": {"blockReason": "SAFETY"}}),
    ],
)
def test_content_policy_refusals_are_permanent(captured, provider, response):
    _, responses = captured
    responses.append(response)
    with pytest.raises(TransformError) as excinfo:
        LLMTransformer().transform(_payload(), provider, _credential(), {})
    assert excinfo.value.kind == "content_policy"
    assert not excinfo.value.transient


def test_output_schema_validation(captured):
    _, responses = captured
    schema = {
        "type": "object",
        "required": ["title", "body"],
        "properties": {"title": {"type": "string"}, "body": {"type": "string"}},
    }
    responses.append(
        {"choices": [{"message": {"content": json.dumps({"title": "New", "body": "Text"})}}]}
    )
    responses.append({"choices": [{"message": {"content": json.dumps({"title": "New"})}}]})
    transformer = LLMTransformer()

    result = transformer.transform(
        _payload(), "openai_compatible", _credential(), {"output_schema": schema}
    )
    assert result.title == "New"
    assert result.metadata["parsed"] == {"title": "New", "body": "Text"}

    with pytest.raises(TransformError) as excinfo:
        transformer.transform(_payload(), "openai_compatible", _credential(), {"output_schema": schema})
    assert excinfo.value.kind == "provider_rejected"
    assert not excinfo.value.transient


def test_unknown_provider_type_is_permanent():
    with pytest.raises(TransformError) as excinfo:
        LLMTransformer().transform(_payload(), "mystery", _credential(), {})
    assert not excinfo.value.transient


def test_http_errors_are_classified(monkeypatch):
    def rate_limited(request, timeout):
        raise urllib.error.HTTPError(
            request.full_url, 429, "Too Many Requests", {}, io.BytesIO(b"slow down")
        )

    monkeypatch.setattr(urllib.request, "urlopen", rate_limited)
    with pytest.raises(TransformError) as excinfo:
        LLMTransformer().transform(_payload(), "openai_compatible", _credential(), {})
    assert excinfo.value.rate_limited
    assert "slow down" in str(excinfo.value)

    def timed_out(request, timeout):
        raise urllib.error.URLError(TimeoutError("timed out"))

    monkeypatch.setattr(urllib.request, "urlopen", timed_out)
    with pytest.raises(TransformError) as excinfo:
        LLMTransformer().transform(_payload(), "openai_compatible", _credential(), {})
    assert excinfo.value.kind == "timeout"
    assert excinfo.value.transient


def test_markdown_publisher_writes_front_matter(tmp_path):
    item = make_item(
        "Launch day",
        url="https://example.com/launch",
        published_at="2026-01-05T10:00:00Z",
    )
    queue_item = QueueItem(
        id=7,
        campaign_id="Tech News",
        status=QueueStatus.PROCESSING,
        item=item,
        retry_count=0,
        discovered_at="2026-01-05T12:00:00.000000+00:00",
    )
    result = TransformResult(content="Body text\n", title="Launch Day!", provider="p1", model="m1")

    path = MarkdownPublisher(str(tmp_path)).publish(result, "Tech News", queue_item)

    assert os.path.dirname(path) == str(tmp_path / "tech-news")
    assert os.path.basename(path) == f"2026-01-05-launch-day-{item.content_fingerprint[:8]}.md"
    text = open(path, encoding="utf-8").read()
    _, front, body = text.split("---\n", 2)
    meta = yaml.safe_load(front)
    assert meta["title"] == "Launch Day!"
    assert meta["source_url"] == "https://example.com/launch"
    assert meta["fingerprint"] == item.content_fingerprint
    assert meta["provider"] == "p1"
    assert meta["draft"] is False
    assert body.strip() == "Body text\n\n[Source](https://example.com/launch)"
