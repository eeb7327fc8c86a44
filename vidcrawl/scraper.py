"""Video URL discovery for channel pages."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from http.cookiejar import Cookie
from pathlib import Path
from typing import Callable, Dict, Iterable, Protocol, Sequence
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from .config import CrawlConfig
from .errors import FatalFetchError, TransientFetchError, classify_fetch_failure
from .http_client import HttpFetcher
from .urls import base_domain

LOGGER = logging.getLogger(__name__)


class Scraper(Protocol):
    def list_video_urls(
        self,
        page_url: str,
        cookies: Sequence[Cookie],
        *,
        cookie_file: Path | None = None,
    ) -> list[str]:
        ...


@dataclass(slots=True)
class SiteRule:
    """Link pattern for a site whose listing pages are plain HTML."""

    domain: str
    link_pattern: str

    def matches(self, link: str) -> bool:
        return re.search(self.link_pattern, link) is not None


_SITE_RULES: Dict[str, SiteRule] = {
    "censored.tv": SiteRule(domain="censored.tv", link_pattern=r"/episodes?/"),
}


def register_site_rule(rule: SiteRule) -> None:
    _SITE_RULES[rule.domain] = rule


def get_site_rule(url: str) -> SiteRule | None:
    return _SITE_RULES.get(base_domain(url))


def list_site_rules() -> Iterable[SiteRule]:
    return _SITE_RULES.values()


class LinkPatternScraper:
    """Collects ``a[href]`` links matching a site rule from an HTML listing page."""

    def __init__(
        self,
        config: CrawlConfig,
        rule: SiteRule,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._rule = rule
        self._transport = transport

    def list_video_urls(
        self,
        page_url: str,
        cookies: Sequence[Cookie],
        *,
        cookie_file: Path | None = None,
    ) -> list[str]:
        with HttpFetcher(self._config, cookies=cookies, transport=self._transport) as fetcher:
            html, _response = fetcher.fetch_html(page_url)

        soup = BeautifulSoup(html, "html.parser")
        links: list[str] = []
        seen: set[str] = set()
        for anchor in soup.select("a[href]"):
            href = (anchor.get("href") or "").strip()
            if not href or href.startswith(("#", "javascript:", "mailto:")):
                continue
            link = urljoin(page_url, href)
            if link in seen or not self._rule.matches(link):
                continue
            seen.add(link)
            links.append(link)
        LOGGER.debug("Found %d candidate link(s) on %s", len(links), page_url)
        return links


def _collect_entry_urls(payload: dict, into: list[str]) -> None:
    for entry in payload.get("entries") or []:
        if not isinstance(entry, dict):
            continue
        if entry.get("entries"):
            # Channel pages list their tabs as nested playlists.
            _collect_entry_urls(entry, into)
            continue
        url = entry.get("url") or entry.get("webpage_url")
        if url:
            into.append(url)


class YtDlpListingScraper:
    """Lists a channel's videos with ``yt-dlp --flat-playlist -J``."""

    def __init__(
        self,
        binary: str = "yt-dlp",
        *,
        timeout: float = 600.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._binary = binary
        self._timeout = timeout
        self._runner = runner

    def build_command(self, page_url: str, cookie_file: Path | None) -> list[str]:
        command = [self._binary, "--flat-playlist", "-J", "--sleep-requests", "1"]
        if cookie_file is not None:
            command.extend(["--cookies", str(cookie_file)])
        command.append(page_url)
        return command

    def list_video_urls(
        self,
        page_url: str,
        cookies: Sequence[Cookie],
        *,
        cookie_file: Path | None = None,
    ) -> list[str]:
        command = self.build_command(page_url, cookie_file)
        try:
            completed = self._runner(command, capture_output=True, text=True, timeout=self._timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransientFetchError(f"listing {page_url} timed out after {self._timeout:.0f}s", url=page_url) from exc
        except FileNotFoundError as exc:
            raise FatalFetchError(f"{self._binary} is not installed", url=page_url) from exc

        if completed.returncode != 0:
            raise classify_fetch_failure(page_url, completed.stderr or completed.stdout or "")

        try:
            payload = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TransientFetchError(f"invalid listing JSON for {page_url}: {exc}", url=page_url) from exc
        if not isinstance(payload, dict):
            raise TransientFetchError(f"unexpected listing payload for {page_url}", url=page_url)

        urls: list[str] = []
        _collect_entry_urls(payload, urls)
        LOGGER.debug("yt-dlp listed %d video(s) for %s", len(urls), page_url)
        return urls


class SiteAwareScraper:
    """Uses a site rule when one is registered, otherwise falls back to yt-dlp."""

    def __init__(
        self,
        config: CrawlConfig,
        *,
        fallback: YtDlpListingScraper | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._fallback = fallback or YtDlpListingScraper(
            config.ytdlp_binary,
            timeout=config.timeout.listing_timeout,
        )
        self._transport = transport

    def list_video_urls(
        self,
        page_url: str,
        cookies: Sequence[Cookie],
        *,
        cookie_file: Path | None = None,
    ) -> list[str]:
        rule = get_site_rule(page_url)
        if rule is None:
            return self._fallback.list_video_urls(page_url, cookies, cookie_file=cookie_file)
        scraper = LinkPatternScraper(self._config, rule, transport=self._transport)
        return scraper.list_video_urls(page_url, cookies, cookie_file=cookie_file)
