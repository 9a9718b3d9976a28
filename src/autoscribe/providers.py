from __future__ import annotations

import json
import logging
import os
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

import jsonschema
import yaml

from .errors import PROVIDER_REJECTED, TRANSPORT_ERROR, TransformError
from .models import Credential, QueueItem, TransformResult
from .utils import log_event, slugify

PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")

DEFAULT_MODELS = {
    "openai_compatible": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-20240620",
    "google": "gemini-1.5-flash",
}

DEFAULT_SYSTEM_PROMPT = "You rewrite source material into an original article."
DEFAULT_USER_PROMPT = "{{input}}"

RATE_LIMITED = "rate_limited"
TIMEOUT = "timeout"
CONTENT_POLICY = "content_policy"

_TRANSIENT_STATUSES = {408, 425, 429}


class Transformer(Protocol):
    def transform(
        self,
        payload: dict[str, Any],
        provider: str,
        credential: Credential,
        parameters: dict[str, Any],
    ) -> TransformResult:
        ...


class Publisher(Protocol):
    def publish(self, result: TransformResult, campaign_id: str, item: QueueItem) -> str:
        ...


def classify_http_status(status: int, body: str) -> TransformError:
    """Map an HTTP failure from a provider to a transient or permanent error."""
    message = f"http_error {status}: {body[:500]}"
    if status == 429:
        return TransformError(RATE_LIMITED, message, transient=True, rate_limited=True)
    if status in _TRANSIENT_STATUSES or status >= 500:
        return TransformError(TRANSPORT_ERROR, message, transient=True)
    return TransformError(PROVIDER_REJECTED, message, transient=False)


class LLMTransformer:
    """Calls chat-style model APIs with the leased credential.

    ``providers`` maps a provider name from a campaign's chain to its
    settings: ``type`` (openai_compatible, anthropic or google), ``base_url``,
    ``model`` and ``timeout_seconds``. A name that is itself a provider type
    needs no entry.
    """

    def __init__(
        self,
        providers: dict[str, Any] | None = None,
        logger: logging.Logger | None = None,
        default_timeout: int = 30,
    ) -> None:
        self.providers = providers or {}
        self.logger = logger or logging.getLogger("autoscribe.providers")
        self.default_timeout = default_timeout

    def transform(
        self,
        payload: dict[str, Any],
        provider: str,
        credential: Credential,
        parameters: dict[str, Any],
    ) -> TransformResult:
        settings = self._settings(provider)
        provider_type = settings["type"]
        model_name = str(parameters.get("model") or settings.get("model") or DEFAULT_MODELS[provider_type])
        base_url = settings.get("base_url") or _default_base_url(provider_type)
        timeout = int(settings.get("timeout_seconds") or self.default_timeout)
        messages = render_messages(parameters, payload)
        raw = _call_provider(
            provider_type,
            base_url,
            credential.key_material,
            model_name,
            messages,
            parameters,
            timeout,
        )
        schema = parameters.get("output_schema")
        metadata: dict[str, Any] = {}
        if schema:
            parsed = _maybe_parse_json(raw)
            try:
                jsonschema.validate(parsed, schema)
            except jsonschema.ValidationError as exc:
                raise TransformError(
                    PROVIDER_REJECTED, f"output failed schema: {exc.message}", transient=False
                ) from exc
            metadata["parsed"] = parsed
        log_event(
            self.logger,
            logging.DEBUG,
            "transform_completed",
            provider=provider,
            model=model_name,
            chars=len(raw),
        )
        return TransformResult(
            content=raw,
            title=_title_from(metadata.get("parsed"), payload),
            provider=provider,
            model=model_name,
            metadata=metadata,
        )

    def _settings(self, provider: str) -> dict[str, Any]:
        settings = dict(self.providers.get(provider) or {})
        provider_type = settings.get("type") or (provider if provider in PROVIDER_TYPES else None)
        if provider_type not in PROVIDER_TYPES:
            raise TransformError(
                PROVIDER_REJECTED, f"unsupported provider type for {provider}", transient=False
            )
        settings["type"] = provider_type
        return settings


def render_messages(parameters: dict[str, Any], payload: dict[str, Any]) -> list[dict[str, str]]:
    text = render_input(payload)
    system = str(parameters.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).replace("{{input}}", text)
    user = str(parameters.get("user_prompt") or DEFAULT_USER_PROMPT).replace("{{input}}", text)
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def render_input(payload: dict[str, Any]) -> str:
    lines = [f"Title: {payload.get('title') or ''}"]
    if payload.get("canonical_url"):
        lines.append(f"Source: {payload['canonical_url']}")
    if payload.get("published_at"):
        lines.append(f"Published: {payload['published_at']}")
    if payload.get("categories"):
        lines.append("Categories: " + ", ".join(payload["categories"]))
    lines.append("")
    lines.append(payload.get("body") or payload.get("excerpt") or "")
    return "\n".join(lines).strip()


def _call_provider(
    provider_type: str,
    base_url: str,
    api_key: str | None,
    model_name: str,
    messages: list[dict[str, str]],
    params: dict[str, Any],
    timeout: int,
) -> str:
    if provider_type == "openai_compatible":
        path = _join_url(base_url, "/chat/completions")
        payload = {
            "model": model_name,
            "messages": messages,
            **_filter_params(params),
        }
        headers = _auth_headers(provider_type, api_key)
        return _read_openai(_http_request(path, headers, payload, timeout))
    if provider_type == "anthropic":
        path = _join_url(base_url, "/messages")
        payload = {
            "model": model_name,
            "max_tokens": int(params.get("max_tokens", 1024)),
            "system": messages[0]["content"],
            "messages": [{"role": "user", "content": messages[1]["content"]}],
        }
        headers = _auth_headers(provider_type, api_key)
        return _read_anthropic(_http_request(path, headers, payload, timeout))
    path = _join_url(base_url, f"/models/{urllib.parse.quote(model_name)}:generateContent")
    path = _append_key(path, api_key)
    payload = {
        "systemInstruction": {"parts": [{"text": messages[0]["content"]}]},
        "contents": [{"parts": [{"text": messages[1]["content"]}]}],
        "generationConfig": _filter_params(params),
    }
    return _read_google(_http_request(path, {}, payload, timeout))


def _http_request(
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(url, data=data, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise classify_http_status(exc.code, body) from exc
    except (TimeoutError, socket.timeout) as exc:
        raise TransformError(TIMEOUT, f"timeout after {timeout}s", transient=True) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TransformError(TIMEOUT, f"timeout after {timeout}s", transient=True) from exc
        raise TransformError(TRANSPORT_ERROR, f"network_error: {exc.reason}", transient=True) from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TransformError(TRANSPORT_ERROR, "provider returned invalid json", transient=True) from exc


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise TransformError(PROVIDER_REJECTED, "openai_missing_choices", transient=False)
    if choices[0].get("finish_reason") == "content_filter":
        raise TransformError(CONTENT_POLICY, "content filtered by provider", transient=False)
    return (choices[0].get("message") or {}).get("content") or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    if response.get("stop_reason") == "refusal":
        raise TransformError(CONTENT_POLICY, "request refused by provider", transient=False)
    content = response.get("content") or []
    if not content:
        raise TransformError(PROVIDER_REJECTED, "anthropic_missing_content", transient=False)
    return content[0].get("text") or ""


def _read_google(response: dict[str, Any]) -> str:
    block_reason = (response.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise TransformError(CONTENT_POLICY, f"prompt blocked: {block_reason}", transient=False)
    candidates = response.get("candidates") or []
    if not candidates:
        raise TransformError(PROVIDER_REJECTED, "google_missing_candidates", transient=False)
    if candidates[0].get("finishReason") == "SAFETY":
        raise TransformError(CONTENT_POLICY, "candidate blocked for safety", transient=False)
    parts = candidates[0].get("content", {}).get("parts", [])
    if not parts:
        raise TransformError(PROVIDER_REJECTED, "google_missing_parts", transient=False)
    return parts[0].get("text") or ""


def _filter_params(params: dict[str, Any]) -> dict[str, Any]:
    allowed = {"temperature", "max_tokens", "top_p", "seed"}
    return {key: value for key, value in params.items() if key in allowed}


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    return "https://generativelanguage.googleapis.com/v1beta"


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _maybe_parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _title_from(parsed: Any, payload: dict[str, Any]) -> str | None:
    if isinstance(parsed, dict) and isinstance(parsed.get("title"), str):
        return parsed["title"]
    return payload.get("title")


class MarkdownPublisher:
    """Writes transformed content as Markdown with YAML front matter.

    Files land in ``<output_dir>/<campaign_id>/`` and the returned path is
    stored as the queue item's result reference.
    """

    def __init__(self, output_dir: str) -> None:
        self.output_dir = output_dir

    def publish(self, result: TransformResult, campaign_id: str, item: QueueItem) -> str:
        target_dir = os.path.join(self.output_dir, slugify(campaign_id))
        os.makedirs(target_dir, exist_ok=True)
        path = os.path.join(target_dir, _safe_filename(result, item))
        source = item.item
        frontmatter = {
            "title": result.title or source.title,
            "date": source.published_at or item.discovered_at,
            "categories": sorted(source.categories),
            "draft": False,
            "source_url": source.canonical_url,
            "source_type": source.source_type.value,
            "fingerprint": source.content_fingerprint,
            "provider": result.provider,
            "model": result.model,
        }
        if source.media_urls:
            frontmatter["images"] = list(source.media_urls)
        body = result.content.strip()
        if source.canonical_url:
            body += f"\n\n[Source]({source.canonical_url})"
        content = "---\n"
        content += yaml.safe_dump(
            frontmatter, sort_keys=False, allow_unicode=False, default_flow_style=False
        )
        content += "---\n\n"
        content += body + "\n"
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)
        return path


def _safe_filename(result: TransformResult, item: QueueItem) -> str:
    date_part = (item.item.published_at or item.discovered_at).split("T")[0]
    slug = slugify(result.title or item.item.title)
    return f"{date_part}-{slug}-{item.content_fingerprint[:8]}.md"
