"""Form-POST login flow and the per-run login cookie cache."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from http.cookiejar import Cookie
from typing import Callable

import httpx
from bs4 import BeautifulSoup

from .errors import CrawlError
from .urls import base_domain, hostname

LOGGER = logging.getLogger(__name__)


class LoginError(CrawlError):
    """Raised when the login page cannot be loaded or rejects the credentials."""


@dataclass(slots=True)
class LoginDetails:
    username: str
    password: str
    login_url: str


def star_password(password: str | None) -> str:
    return "*" * len(password or "")


def parse_login_token(html: str) -> str | None:
    """Return the hidden ``_token`` (CSRF) input value of a login form, if any."""

    soup = BeautifulSoup(html, "html.parser")
    node = soup.find("input", attrs={"name": "_token"})
    if node is None:
        return None
    value = node.get("value")
    return value or None


def login(details: LoginDetails, *, client: httpx.Client) -> list[Cookie]:
    """Log in with a plain form POST and return the session cookies."""

    LOGGER.info(
        "Logging in to %s as %s with password %s",
        details.login_url,
        details.username,
        star_password(details.password),
    )
    try:
        page = client.get(details.login_url)
        page.raise_for_status()
    except httpx.HTTPError as exc:
        raise LoginError(f"failed to load login page {details.login_url}: {exc}") from exc

    form = {
        "email": details.username,
        "username": details.username,
        "password": details.password,
    }
    token = parse_login_token(page.text)
    if token:
        form["_token"] = token

    try:
        response = client.post(details.login_url, data=form)
    except httpx.HTTPError as exc:
        raise LoginError(f"login request to {details.login_url} failed: {exc}") from exc
    if response.status_code >= 400:
        raise LoginError(f"login to {details.login_url} returned status {response.status_code}")

    cookies = list(client.cookies.jar)
    LOGGER.info("Login to %s succeeded with %d cookie(s)", details.login_url, len(cookies))
    return cookies


class LoginCookieCache:
    """Login cookies per hostname, scoped to one run.

    Each hostname logs in at most once per run, even when several workers ask
    at the same time. A failed login is remembered as "no cookies".
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cookies: dict[str, list[Cookie]] = {}
        self._host_locks: dict[str, threading.Lock] = {}

    def get(self, url_or_host: str) -> list[Cookie] | None:
        host = hostname(url_or_host) or url_or_host.lower()
        with self._lock:
            for key in (host, base_domain(host)):
                if key in self._cookies:
                    return list(self._cookies[key])
        return None

    def store(self, url_or_host: str, cookies: list[Cookie]) -> None:
        host = hostname(url_or_host) or url_or_host.lower()
        with self._lock:
            self._cookies[host] = list(cookies)

    def get_or_login(self, url: str, loader: Callable[[], list[Cookie]]) -> list[Cookie]:
        host = hostname(url) or url.lower()
        with self._lock:
            host_lock = self._host_locks.setdefault(host, threading.Lock())

        with host_lock:
            cached = self.get(host)
            if cached is not None:
                LOGGER.debug("Reusing login cookies for %s", host)
                return cached
            try:
                cookies = loader()
            except LoginError as exc:
                LOGGER.warning("Login for %s failed, continuing without auth cookies: %s", host, exc)
                cookies = []
            self.store(host, cookies)
            return list(cookies)
