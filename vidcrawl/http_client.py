"""HTTP utilities for fetching channel listing pages."""

from __future__ import annotations

import logging
import re
from http.cookiejar import Cookie, CookieJar
from typing import Callable, Iterable

import httpx

from .config import CrawlConfig
from .errors import BotBlockedError, FatalFetchError, TransientFetchError, is_bot_detection_message
from .urls import base_domain

LOGGER = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = {
    httpx.codes.REQUEST_TIMEOUT,
    httpx.codes.TOO_MANY_REQUESTS,
    httpx.codes.INTERNAL_SERVER_ERROR,
    httpx.codes.BAD_GATEWAY,
    httpx.codes.SERVICE_UNAVAILABLE,
    httpx.codes.GATEWAY_TIMEOUT,
}
_BLOCK_STATUS_CODES = {
    httpx.codes.FORBIDDEN,
    httpx.codes.TOO_MANY_REQUESTS,
    httpx.codes.SERVICE_UNAVAILABLE,
}
_CREDENTIAL_QUERY_RE = re.compile(
    r"(?P<key>[?&](?:password|passwd|pass|token|_token|api_key|key)=)[^&\s\"']+",
    re.IGNORECASE,
)


def mask_credentials(text: str) -> str:
    return _CREDENTIAL_QUERY_RE.sub(r"\g<key><redacted>", text)


class _HttpxCredentialFilter(logging.Filter):
    """Redact credentials carried in query strings from httpx request logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - exercised indirectly
        try:
            message = record.getMessage()
        except Exception:
            return True
        masked = mask_credentials(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


def _ensure_httpx_filter() -> None:
    logger = logging.getLogger("httpx")
    if any(isinstance(f, _HttpxCredentialFilter) for f in logger.filters):
        return
    logger.addFilter(_HttpxCredentialFilter())


_ensure_httpx_filter()


def build_client(
    config: CrawlConfig,
    *,
    cookies: Iterable[Cookie] | None = None,
    transport: httpx.BaseTransport | None = None,
    timeout: float | None = None,
) -> httpx.Client:
    jar = CookieJar()
    for cookie in cookies or ():
        jar.set_cookie(cookie)
    kwargs: dict[str, object] = {
        "timeout": timeout if timeout is not None else config.timeout.request_timeout,
        "headers": {"User-Agent": config.user_agent},
        "follow_redirects": True,
        "cookies": jar,
    }
    if transport:
        kwargs["transport"] = transport
    return httpx.Client(**kwargs)


def login_client_factory(
    config: CrawlConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> Callable[[], httpx.Client]:
    """Client factory for form logins, using the login timeout instead of the request one."""

    def factory() -> httpx.Client:
        return build_client(config, transport=transport, timeout=config.timeout.login_timeout)

    return factory


class HttpFetcher:
    """Lightweight HTTP client with sane defaults for crawling."""

    def __init__(
        self,
        config: CrawlConfig,
        *,
        cookies: Iterable[Cookie] | None = None,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = client or build_client(config, cookies=cookies, transport=transport)
        self._owns_client = client is None

    def fetch_html(self, url: str) -> tuple[str, httpx.Response]:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"timed out fetching {url}: {exc}", url=url) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"request to {url} failed: {exc}", url=url) from exc

        if response.status_code == httpx.codes.OK:
            content_type = response.headers.get("content-type", "")
            if "html" not in content_type:
                raise FatalFetchError(f"Unsupported content type '{content_type}' for {url}", url=url)
            if is_bot_detection_message(response.text):
                raise BotBlockedError(base_domain(url), url=url, detail="challenge page served")
            return response.text, response

        if response.status_code in _BLOCK_STATUS_CODES and is_bot_detection_message(response.text):
            raise BotBlockedError(
                base_domain(url),
                url=url,
                detail=f"status {response.status_code}",
            )
        if response.status_code in _TRANSIENT_STATUS_CODES:
            raise TransientFetchError(f"Unexpected status {response.status_code} for {url}", url=url)
        raise FatalFetchError(f"Unexpected status {response.status_code} for {url}", url=url)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()
