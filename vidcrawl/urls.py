"""URL helpers used to compare scraped links against stored videos."""

from __future__ import annotations

from typing import Iterable
from urllib.parse import urlsplit

import tldextract

# Bundled public-suffix snapshot only; never fetch the list over the network.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(raw_url: str) -> str:
    """Strip scheme and trailing slashes so equivalent URLs compare equal.

    Case is preserved: several platforms use case-sensitive path segments
    (video IDs, channel handles).
    """

    cleaned = raw_url.strip()
    for prefix in ("https://", "http://"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    return cleaned.rstrip("/")


def hostname(raw_url: str) -> str:
    cleaned = raw_url.strip()
    if "://" not in cleaned:
        cleaned = "//" + cleaned
    try:
        host = urlsplit(cleaned).hostname
    except ValueError:
        return ""
    return (host or "").lower()


def base_domain(url_or_host: str) -> str:
    """Return the eTLD+1 of a URL or hostname (``m.youtube.com`` -> ``youtube.com``)."""

    host = hostname(url_or_host) or url_or_host.strip().lower()
    if not host:
        return ""
    extracted = _EXTRACT(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return host


def filter_new_urls(candidates: Iterable[str], known_urls: Iterable[str]) -> list[str]:
    """Return candidates whose normalized form is not already known.

    Order is preserved and duplicates among the candidates collapse to the
    first occurrence.
    """

    seen = {normalize_url(url) for url in known_urls if url}
    fresh: list[str] = []
    for url in candidates:
        if not url or not url.strip():
            continue
        key = normalize_url(url)
        if key in seen:
            continue
        seen.add(key)
        fresh.append(url.strip())
    return fresh
