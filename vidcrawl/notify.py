"""Webhook notifications sent after a crawl pass fetched new videos."""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Sequence
from urllib.parse import urlsplit

import httpx

from .config import DEFAULT_USER_AGENT
from .http_client import mask_credentials
from .store import NotificationRecord

LOGGER = logging.getLogger(__name__)

_LAN_SUFFIXES = (".local", ".lan", ".home", ".internal")


def is_private_host(host: str | None) -> bool:
    """True for hosts on the local network (media servers, home automation)."""

    host = (host or "").strip("[]").lower()
    if not host:
        return False
    if host == "localhost" or "." not in host or host.endswith(_LAN_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def select_notify_urls(
    notifications: Iterable[NotificationRecord],
    channel_urls_with_new: Iterable[str],
) -> list[str]:
    """Notification targets for a pass; scoped entries fire only for their channel URL."""

    wanted = {url.lower() for url in channel_urls_with_new}
    return [
        item.notify_url
        for item in notifications
        if not item.channel_url or item.channel_url.lower() in wanted
    ]


class Notifier:
    """POSTs to every selected notification URL and collects the failures."""

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        lan_timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = timeout
        self._lan_timeout = lan_timeout
        self._transport = transport

    def _client(self, lan: bool) -> httpx.Client:
        # LAN services commonly run on self-signed certificates.
        kwargs: dict[str, object] = {
            "timeout": self._lan_timeout if lan else self._timeout,
            "headers": {"User-Agent": self._user_agent},
            "verify": not lan,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def notify(
        self,
        channel_name: str,
        notifications: Sequence[NotificationRecord],
        channel_urls_with_new: Iterable[str],
    ) -> list[tuple[str, str]]:
        """Send the notifications; returns ``(notify_url, reason)`` for each one that failed."""

        if not notifications:
            LOGGER.debug("No notification URLs configured for channel %s", channel_name)
            return []
        targets = select_notify_urls(notifications, channel_urls_with_new)
        if not targets:
            LOGGER.debug("No notification URLs matched for channel %s", channel_name)
            return []

        failures: list[tuple[str, str]] = []
        for notify_url in targets:
            shown = mask_credentials(notify_url)
            lan = is_private_host(urlsplit(notify_url).hostname)
            try:
                with self._client(lan) as client:
                    response = client.post(notify_url, headers={"Content-Type": "application/json"})
            except httpx.HTTPError as exc:
                LOGGER.warning("Failed to notify %s for channel %s: %s", shown, channel_name, exc)
                failures.append((notify_url, f"notification failed: {exc}"))
                continue
            if response.status_code >= 400:
                LOGGER.warning(
                    "Notification to %s for channel %s failed with status %d",
                    shown,
                    channel_name,
                    response.status_code,
                )
                failures.append((notify_url, f"notification failed with status {response.status_code}"))
                continue
            LOGGER.info("Notified %s for channel %s", shown, channel_name)
        return failures
