"""HTTP client used by HTTP-backed providers – thin wrapper around httpx.

  * ``HttpClient``     – JSON requests bound to one endpoint, with retries
  * ``ResponseCache``  – in-memory GET response cache with per-entry expiry
  * ``NextLinkPager`` / ``QueryPager`` – iterate over paginated collections
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Iterator, Mapping, Protocol

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from entsync.config import get_settings
from entsync.exceptions import HttpRequestError
from entsync.logging import get_logger

log = get_logger("http")


# ── Response cache ──────────────────────────────────────

class ResponseCache:
    """Thread-safe in-memory cache. An expiry of ``0`` means "never expires"."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(method: str, url: str, query: Mapping[str, Any] | None, headers: Mapping[str, str]) -> str:
        return json.dumps(
            [method, url, sorted((query or {}).items()), sorted(headers.items())],
            default=str,
        )

    def get(self, key: str) -> tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            expires_at, value = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._entries[key]
                return False, None
            return True, value

    def set(self, key: str, value: Any, expiry: int) -> None:
        expires_at = None if expiry == 0 else time.monotonic() + expiry
        with self._lock:
            self._entries[key] = (expires_at, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ── Client ──────────────────────────────────────────────

class HttpClient:
    """JSON client bound to a single endpoint URL.

    Transport errors are retried with exponential backoff; HTTP error
    statuses raise ``HttpRequestError`` immediately.
    """

    def __init__(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        cache: ResponseCache | None = None,
        expiry: int | None = None,
        cache_key_headers: Mapping[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_max_wait: float | None = None,
    ):
        settings = get_settings()
        self.url = url
        self.headers = dict(headers or {})
        self.cache = cache
        self.expiry = expiry
        self.cache_key_headers = dict(cache_key_headers if cache_key_headers is not None else self.headers)
        self.retry_attempts = retry_attempts or settings.http_retry_attempts
        self.retry_max_wait = retry_max_wait if retry_max_wait is not None else settings.http_retry_max_wait
        self._client = httpx.Client(
            headers=self.headers,
            timeout=timeout if timeout is not None else settings.http_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ── Requests ────────────────────────────────────────

    def get(self, query: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", query=query)

    def post(self, data: Any = None, query: Mapping[str, Any] | None = None) -> Any:
        return self.request("POST", data, query)

    def put(self, data: Any = None, query: Mapping[str, Any] | None = None) -> Any:
        return self.request("PUT", data, query)

    def patch(self, data: Any = None, query: Mapping[str, Any] | None = None) -> Any:
        return self.request("PATCH", data, query)

    def delete(self, data: Any = None, query: Mapping[str, Any] | None = None) -> Any:
        return self.request("DELETE", data, query)

    def request(
        self,
        method: str,
        data: Any = None,
        query: Mapping[str, Any] | None = None,
        url: str | None = None,
    ) -> Any:
        return self.fetch(method, data, query, url)[0]

    def get_paged(self, query: Mapping[str, Any] | None = None, pager: Pager | None = None) -> Iterator[Any]:
        """Yield records from every page of a collection."""
        pager = pager or NextLinkPager()
        for page in pager.pages(self, query):
            yield from page

    def fetch(
        self,
        method: str,
        data: Any = None,
        query: Mapping[str, Any] | None = None,
        url: str | None = None,
    ) -> tuple[Any, httpx.Response | None]:
        """Send a request and return the decoded body with the raw response.

        The response is ``None`` when the body came from the cache.
        """
        url = url or self.url
        cache_key = None
        if method == "GET" and self.cache is not None and self.expiry is not None:
            cache_key = ResponseCache.make_key(method, url, query, self.cache_key_headers)
            hit, value = self.cache.get(cache_key)
            if hit:
                log.debug("http_cache_hit", url=url)
                return value, None

        response = self._send(method, url, data, query)
        body = _decode(response)
        if cache_key is not None:
            self.cache.set(cache_key, body, self.expiry)
        return body, response

    def _send(self, method: str, url: str, data: Any, query: Mapping[str, Any] | None) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(min=0, max=self.retry_max_wait),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        kwargs: dict[str, Any] = {"params": dict(query) if query else None}
        if data is not None:
            kwargs["json"] = data
        response = retrying(self._client.request, method, url, **kwargs)
        log.debug("http_request", method=method, url=url, status=response.status_code)
        if response.is_error:
            raise HttpRequestError(method, url, response.status_code, response.text)
        return response


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    return response.json()


# ── Pagers ──────────────────────────────────────────────

class Pager(Protocol):
    def pages(self, client: HttpClient, query: Mapping[str, Any] | None) -> Iterator[list[Any]]:
        ...


def extract_records(body: Any, data_key: str | None) -> list[Any]:
    if body is None:
        return []
    if data_key is not None and isinstance(body, dict):
        body = body.get(data_key) or []
    return body if isinstance(body, list) else [body]


class NextLinkPager:
    """Follow a ``next`` URL from the response body or the ``Link`` header."""

    def __init__(self, data_key: str | None = None, next_key: str = "next"):
        self.data_key = data_key
        self.next_key = next_key

    def pages(self, client: HttpClient, query: Mapping[str, Any] | None) -> Iterator[list[Any]]:
        body, response = client.fetch("GET", query=query)
        while True:
            yield extract_records(body, self.data_key)
            next_url = None
            if isinstance(body, dict):
                next_url = body.get(self.next_key)
            if not next_url and response is not None:
                next_url = response.links.get("next", {}).get("url")
            if not next_url:
                return
            body, response = client.fetch("GET", url=next_url)


class QueryPager:
    """Request numbered pages until one comes back short or empty."""

    def __init__(
        self,
        page_param: str = "page",
        size_param: str | None = None,
        page_size: int | None = None,
        data_key: str | None = None,
        first_page: int = 1,
    ):
        self.page_param = page_param
        self.size_param = size_param
        self.page_size = page_size
        self.data_key = data_key
        self.first_page = first_page

    def pages(self, client: HttpClient, query: Mapping[str, Any] | None) -> Iterator[list[Any]]:
        page = self.first_page
        while True:
            params = dict(query or {})
            params[self.page_param] = page
            if self.size_param and self.page_size:
                params[self.size_param] = self.page_size
            records = extract_records(client.get(params), self.data_key)
            if not records:
                return
            yield records
            if self.page_size and len(records) < self.page_size:
                return
            page += 1
