"""Browser cookie discovery, cookie merging and Netscape cookie-jar files."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from http.cookiejar import Cookie, MozillaCookieJar
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, Sequence

import browser_cookie3
import httpx

from .auth import LoginCookieCache, LoginDetails, login
from .errors import CrawlError
from .store import ChannelRecord, ChannelURLRecord
from .urls import base_domain, hostname

LOGGER = logging.getLogger(__name__)

# Short-lived session tokens that break yt-dlp when replayed from a file.
_SESSION_TOKEN_PREFIXES = ("st-", "cst-", "temp-")

SUPPORTED_BROWSERS = (
    "chrome",
    "chromium",
    "brave",
    "edge",
    "firefox",
    "librewolf",
    "opera",
    "opera_gx",
    "vivaldi",
    "safari",
)


class CookieResolutionError(CrawlError):
    """Raised when cookies are required but cannot be obtained or written."""


def make_cookie(
    name: str,
    value: str,
    domain: str,
    *,
    path: str = "/",
    secure: bool = False,
    expires: int | None = None,
) -> Cookie:
    return Cookie(
        version=0,
        name=name,
        value=value,
        port=None,
        port_specified=False,
        domain=domain,
        domain_specified=domain.startswith("."),
        domain_initial_dot=domain.startswith("."),
        path=path,
        path_specified=True,
        secure=secure,
        expires=expires,
        discard=expires is None,
        comment=None,
        comment_url=None,
        rest={},
    )


class BrowserCookieStore(Protocol):
    name: str

    def read_cookies(self, domain: str) -> list[Cookie]:
        ...


class BrowserCookieSource(Protocol):
    def find_all_cookie_stores(self) -> list[BrowserCookieStore]:
        ...


@dataclass(slots=True)
class BrowserCookie3Store:
    name: str
    loader: Callable[..., Iterable[Cookie]]

    def read_cookies(self, domain: str) -> list[Cookie]:
        return list(self.loader(domain_name=domain))


class BrowserCookie3Source:
    """Cookie stores of the locally installed browsers, read through ``browser_cookie3``."""

    def __init__(self, browsers: Sequence[str] | None = None) -> None:
        self._browsers = tuple(browsers or SUPPORTED_BROWSERS)

    def find_all_cookie_stores(self) -> list[BrowserCookieStore]:
        stores: list[BrowserCookieStore] = []
        for name in self._browsers:
            loader = getattr(browser_cookie3, name, None)
            if callable(loader):
                stores.append(BrowserCookie3Store(name=name, loader=loader))
        return stores


def _domain_matches(cookie: Cookie, domain: str) -> bool:
    cookie_domain = (cookie.domain or "").lower()
    return cookie_domain == domain or cookie_domain == "." + domain


def _keep_cookie(cookie: Cookie) -> bool:
    return not cookie.name.lower().startswith(_SESSION_TOKEN_PREFIXES)


class BrowserCookieManager:
    """Reads and caches browser cookies per domain for the lifetime of a run."""

    def __init__(self, source: BrowserCookieSource) -> None:
        self._source = source
        self._lock = threading.Lock()
        self._stores: Optional[list[BrowserCookieStore]] = None
        self._cache: dict[tuple[str, str], list[Cookie]] = {}

    def _all_stores(self) -> list[BrowserCookieStore]:
        if self._stores is None:
            self._stores = list(self._source.find_all_cookie_stores())
            LOGGER.debug("Found %d browser cookie store(s)", len(self._stores))
        return self._stores

    def cookies_for(self, url: str, *, browser: str | None = None) -> list[Cookie]:
        domain = base_domain(url)
        if not domain:
            return []
        browser_key = (browser or "").lower()
        with self._lock:
            cached = self._cache.get((domain, browser_key))
            if cached is not None:
                return list(cached)

            stores = self._all_stores()
            if browser_key:
                stores = [store for store in stores if store.name.lower() == browser_key]
                if not stores:
                    LOGGER.warning("No cookie store found for browser %r", browser)

            collected: dict[tuple[str, str, str], Cookie] = {}
            for store in stores:
                try:
                    cookies = store.read_cookies(domain)
                except Exception as exc:  # pragma: no cover - depends on local browsers
                    # Missing profiles, locked databases and keyring failures all mean "no cookies here".
                    LOGGER.debug("Skipping %s cookie store for %s: %s", store.name, domain, exc)
                    continue
                for cookie in cookies:
                    if _domain_matches(cookie, domain) and _keep_cookie(cookie):
                        collected.setdefault((cookie.domain, cookie.path, cookie.name), cookie)

            result = list(collected.values())
            self._cache[(domain, browser_key)] = result
            LOGGER.debug("Loaded %d browser cookie(s) for %s", len(result), domain)
            return list(result)


def merge_cookies(primary: Iterable[Cookie], secondary: Iterable[Cookie]) -> list[Cookie]:
    """Combine two cookie sets; ``primary`` wins whenever a name appears in both."""

    primary = list(primary)
    primary_names = {cookie.name for cookie in primary}
    merged: dict[tuple[str, str, str], Cookie] = {}
    for cookie in secondary:
        if cookie.name in primary_names:
            continue
        merged[(cookie.domain, cookie.path, cookie.name)] = cookie
    for cookie in primary:
        merged[(cookie.domain, cookie.path, cookie.name)] = cookie
    return list(merged.values())


def cookie_file_path(cookie_dir: Path, channel_name: str, url: str) -> Path:
    safe_name = channel_name.strip().replace(" ", "-").replace("/", "-") or "channel"
    if not url:
        return cookie_dir / f"{safe_name}.txt"
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    return cookie_dir / f"{safe_name}_{digest}.txt"


def write_cookie_file(cookies: Iterable[Cookie], path: Path) -> Path:
    """Write cookies in Netscape format, replacing any previous file atomically."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    jar = MozillaCookieJar(str(tmp_path))
    for cookie in cookies:
        jar.set_cookie(cookie)
    try:
        jar.save(ignore_discard=True, ignore_expires=True)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


@dataclass(slots=True)
class ResolvedCookies:
    cookies: list[Cookie] = field(default_factory=list)
    cookie_file: Optional[Path] = None

    @property
    def empty(self) -> bool:
        return not self.cookies


class CookieResolver:
    """Works out which cookies a channel URL should be crawled with."""

    def __init__(
        self,
        cookie_dir: Path,
        *,
        login_cache: LoginCookieCache,
        browser_manager: BrowserCookieManager | None = None,
        client_factory: Callable[[], httpx.Client] | None = None,
    ) -> None:
        self._cookie_dir = cookie_dir
        self._login_cache = login_cache
        self._browser_manager = browser_manager
        self._client_factory = client_factory or (lambda: httpx.Client(follow_redirects=True, timeout=20.0))

    def resolve(self, channel: ChannelRecord, channel_url: ChannelURLRecord) -> ResolvedCookies:
        settings = channel.settings
        login_cookies: list[Cookie] = []
        if channel_url.has_login:
            login_cookies = self._login_cookies(channel_url)

        browser_cookies: list[Cookie] = []
        if settings.cookie_source or settings.use_global_cookies:
            if self._browser_manager is None:
                LOGGER.warning(
                    "Channel %s wants browser cookies but no browser cookie source is configured",
                    channel.name,
                )
            else:
                browser_cookies = self._browser_manager.cookies_for(
                    channel_url.url,
                    browser=settings.cookie_source or None,
                )

        merged = merge_cookies(login_cookies, browser_cookies)
        if not merged:
            if settings.use_global_cookies and settings.require_cookies:
                raise CookieResolutionError(
                    f"no cookies found for {channel_url.url} and channel {channel.name!r} requires them"
                )
            LOGGER.debug("No cookies for %s; crawling unauthenticated", channel_url.url)
            return ResolvedCookies()

        path = cookie_file_path(self._cookie_dir, channel.name, channel_url.url)
        try:
            write_cookie_file(merged, path)
        except OSError as exc:
            raise CookieResolutionError(f"failed to write cookie file {path}: {exc}") from exc
        LOGGER.debug("Wrote %d cookie(s) for %s to %s", len(merged), channel_url.url, path)
        return ResolvedCookies(cookies=merged, cookie_file=path)

    def _login_cookies(self, channel_url: ChannelURLRecord) -> list[Cookie]:
        details = LoginDetails(
            username=channel_url.username or "",
            password=channel_url.password or "",
            login_url=channel_url.login_url or "",
        )

        def loader() -> list[Cookie]:
            with self._client_factory() as client:
                return login(details, client=client)

        host = hostname(channel_url.url) or hostname(details.login_url)
        return self._login_cache.get_or_login(host, loader)
