from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import HttpConfig
from .errors import TransportError
from .utils import log_event


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int
    content: bytes

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid JSON from {self.url}") from exc


class Transport(Protocol):
    def fetch(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> FetchResult:
        ...


def build_url(url: str, params: dict[str, Any] | None) -> str:
    if not params:
        return url
    query = urlencode({key: value for key, value in params.items() if value is not None})
    joiner = "&" if "?" in url else "?"
    return f"{url}{joiner}{query}"


class HttpTransport:
    """Blocking HTTP GET with a bounded timeout and retry on connection errors."""

    def __init__(self, config: HttpConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("autoscribe.transport")

    def fetch(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> FetchResult:
        full_url = build_url(url, params)
        merged = {"User-Agent": self._config.user_agent}
        merged.update(headers or {})
        attempt = 0
        while True:
            try:
                request = Request(full_url, headers=merged)
                with urlopen(request, timeout=self._config.timeout_seconds) as response:
                    status = response.getcode()
                    content = response.read()
                return FetchResult(url=full_url, status=status, content=content)
            except HTTPError as exc:
                raise TransportError(f"HTTP {exc.code} for {url}", status=exc.code) from exc
            except (URLError, TimeoutError, OSError) as exc:
                if attempt >= self._config.max_retries:
                    raise TransportError(f"fetch failed for {url}: {exc}") from exc
                attempt += 1
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "fetch_retry",
                    url=url,
                    attempt=attempt,
                    error=exc,
                )
                time.sleep(self._config.backoff_seconds * attempt)
