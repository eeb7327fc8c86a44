"""Runtime configuration for crawl runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_DATA_DIR = Path("data")
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/126.0 Safari/537.36"
)
DEFAULT_YTDLP_BINARY = "yt-dlp"

# Hard cap on per-channel fetch workers.
MAX_CONCURRENCY = 25

_ENV_PREFIX = "VIDCRAWL_"


@dataclass(slots=True)
class RetryConfig:
    # Linear backoff: attempt N waits base_delay * N seconds.
    base_delay: float = 5.0


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 15.0
    login_timeout: float = 20.0
    listing_timeout: float = 600.0
    fetch_timeout: float = 3600.0


@dataclass(slots=True)
class LockConfig:
    stale_after: float = 120.0
    heartbeat_interval: float = 30.0


@dataclass(slots=True)
class CrawlConfig:
    db_url: Optional[str] = None
    data_dir: Path = DEFAULT_DATA_DIR
    user_agent: str = DEFAULT_USER_AGENT
    global_concurrency: int = 1
    ytdlp_binary: str = DEFAULT_YTDLP_BINARY
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    lock: LockConfig = field(default_factory=LockConfig)

    @property
    def cookie_dir(self) -> Path:
        return self.data_dir / "cookies"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cookie_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)


def _env_value(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_value(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {_ENV_PREFIX}{name} value {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{_ENV_PREFIX}{name} must not be negative (got {raw!r})")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _env_value(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {_ENV_PREFIX}{name} value {raw!r}") from exc


def load_crawl_config(env: Mapping[str, str] | None = None) -> CrawlConfig:
    """Build a :class:`CrawlConfig` from ``VIDCRAWL_*`` environment variables."""

    if env is None:
        env = os.environ

    config = CrawlConfig()
    config.db_url = _env_value(env, "DATABASE_URL")

    data_dir = _env_value(env, "DATA_DIR")
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()

    user_agent = _env_value(env, "USER_AGENT")
    if user_agent:
        config.user_agent = user_agent

    ytdlp = _env_value(env, "YTDLP_BINARY")
    if ytdlp:
        config.ytdlp_binary = ytdlp

    concurrency = _env_int(env, "CONCURRENCY", config.global_concurrency)
    if not 1 <= concurrency <= MAX_CONCURRENCY:
        raise ValueError(
            f"{_ENV_PREFIX}CONCURRENCY must be between 1 and {MAX_CONCURRENCY} (got {concurrency})"
        )
    config.global_concurrency = concurrency

    config.timeout.request_timeout = _env_float(env, "REQUEST_TIMEOUT", config.timeout.request_timeout)
    config.timeout.login_timeout = _env_float(env, "LOGIN_TIMEOUT", config.timeout.login_timeout)
    config.timeout.fetch_timeout = _env_float(env, "FETCH_TIMEOUT", config.timeout.fetch_timeout)
    config.retry.base_delay = _env_float(env, "RETRY_DELAY", config.retry.base_delay)
    config.lock.heartbeat_interval = _env_float(
        env, "HEARTBEAT_INTERVAL", config.lock.heartbeat_interval
    )
    if config.lock.heartbeat_interval <= 0 or config.lock.heartbeat_interval >= config.lock.stale_after:
        raise ValueError(
            f"{_ENV_PREFIX}HEARTBEAT_INTERVAL must be positive and below the "
            f"{config.lock.stale_after:.0f}s staleness threshold"
        )
    return config
