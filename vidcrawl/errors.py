"""Exception taxonomy shared by the scraper, fetcher and crawl orchestrator."""

from __future__ import annotations

from .urls import base_domain

BOT_ACTIVITY_SENTINEL = "detected bot activity"

_BOT_PHRASES = (
    "confirm you're not a bot",
    "confirm you’re not a bot",
    "confirm youâ€™re not a bot",
    "not a robot",
    BOT_ACTIVITY_SENTINEL,
)

_FATAL_PHRASES = (
    "unsupported url",
    "private video",
    "video unavailable",
    "this video has been removed",
    "has been terminated",
    "http error 404",
    "http error 410",
)


class CrawlError(RuntimeError):
    """Base class for failures raised by the crawl engine."""


class ValidationError(CrawlError, ValueError):
    """Raised when input or settings are malformed; nothing is mutated."""


class FetchError(CrawlError):
    """Raised by scrapers and fetchers when a remote operation fails."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class TransientFetchError(FetchError):
    """Failure that may succeed on retry (timeouts, 5xx, dropped connections)."""


class FatalFetchError(FetchError):
    """Failure that retrying cannot fix (removed video, unsupported URL)."""


class BotBlockedError(FetchError):
    """The remote site flagged the crawler as a bot for ``hostname``."""

    def __init__(
        self,
        hostname: str,
        *,
        url: str | None = None,
        context: str | None = None,
        detail: str = "",
    ) -> None:
        target = url or hostname
        message = f"url {target!r} {BOT_ACTIVITY_SENTINEL}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, url=url)
        self.hostname = hostname
        self.context = context


def is_bot_detection_message(message: str | None) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(phrase in lowered for phrase in _BOT_PHRASES)


def classify_fetch_failure(url: str, message: str, *, context: str | None = None) -> FetchError:
    """Turn raw downloader output into the matching exception type.

    This is the only place where error text is pattern-matched; everything
    downstream dispatches on the exception class.
    """

    detail = (message or "").strip()
    if is_bot_detection_message(detail):
        return BotBlockedError(base_domain(url), url=url, context=context, detail=detail)

    lowered = detail.lower()
    if any(phrase in lowered for phrase in _FATAL_PHRASES):
        return FatalFetchError(f"{url}: {detail}", url=url)
    return TransientFetchError(f"{url}: {detail or 'unknown error'}", url=url)
