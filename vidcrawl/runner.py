"""Command-line entry point that crawls every due channel once."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .auth import LoginCookieCache
from .blocking import BlockLedger
from .config import CrawlConfig, load_crawl_config
from .cookies import BrowserCookie3Source, BrowserCookieManager, CookieResolver
from .crawl import CrawlOrchestrator, CrawlResult
from .errors import CrawlError
from .fetcher import CeleryFetcher, YtDlpFetcher
from .http_client import login_client_factory
from .notify import Notifier
from .program import HeartbeatThread, ProgramAlreadyRunningError, ProgramController, ProgramLockError
from .scraper import SiteAwareScraper
from .settings import utcnow
from .store import ChannelLocks, ChannelRecord, ChannelStore

LOGGER = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crawl subscribed video channels for new uploads")
    parser.add_argument("--db-url", type=str, help="SQLAlchemy database URL (or VIDCRAWL_DATABASE_URL)")
    parser.add_argument("--data-dir", type=Path, help="Directory for cookie files and logs")
    parser.add_argument(
        "--channel",
        action="append",
        default=[],
        help="Only process the named channel (repeatable)",
    )
    parser.add_argument(
        "--ignore-run",
        action="store_true",
        help="Record currently listed videos as finished without fetching them",
    )
    parser.add_argument("--resume", action="store_true", help="Retry videos left pending or failed")
    parser.add_argument(
        "--download",
        action="append",
        default=[],
        metavar="URL",
        help="Fetch this video URL for the single --channel given (repeatable)",
    )
    parser.add_argument(
        "--fetcher",
        choices=("ytdlp", "celery"),
        default="ytdlp",
        help="Run yt-dlp in-process or hand videos to the Celery queue",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "vidcrawl.log"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def attach_file_logging(log_dir: Path) -> logging.FileHandler | None:
    """Mirror the run log into ``log_dir``; returns the handler it added, if any."""

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = os.path.abspath(log_dir / LOG_FILE_NAME)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == log_path:
            return None
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)
    return file_handler


def detach_file_logging(handler: logging.FileHandler | None) -> None:
    if handler is None:
        return
    logging.getLogger().removeHandler(handler)
    handler.close()


def build_config(args: argparse.Namespace) -> CrawlConfig:
    config = load_crawl_config()
    if args.db_url:
        config.db_url = args.db_url
    if args.data_dir:
        config.data_dir = args.data_dir
    if not config.db_url:
        raise ValueError("--db-url or VIDCRAWL_DATABASE_URL is required")
    return config


@dataclass(slots=True)
class RunSummary:
    crawled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _run_channel(
    orchestrator: CrawlOrchestrator,
    channel: ChannelRecord,
    *,
    ignore: bool,
    resume: bool,
    cancel: threading.Event | None,
) -> list[CrawlResult]:
    if ignore:
        return [orchestrator.crawl_channel_ignore(channel)]
    results = []
    if resume:
        results.append(orchestrator.resume_unfinished(channel, cancel=cancel))
    results.append(orchestrator.crawl_channel(channel, cancel=cancel))
    return results


def check_channels(
    store: ChannelStore,
    orchestrator: CrawlOrchestrator,
    *,
    names: Sequence[str] | None = None,
    ignore: bool = False,
    resume: bool = False,
    max_workers: int = 1,
    now: datetime | None = None,
    cancel: threading.Event | None = None,
) -> RunSummary:
    """Crawl every channel that is due; one channel failing never stops the others."""

    summary = RunSummary()
    now = now or utcnow()
    channels = store.list_channels()
    if names:
        wanted = set(names)
        missing = wanted - {channel.name for channel in channels}
        for name in sorted(missing):
            summary.failed[name] = "channel not found"
        channels = [channel for channel in channels if channel.name in wanted]

    due: list[ChannelRecord] = []
    for channel in channels:
        if channel.settings.paused:
            LOGGER.info("Channel %s is paused; skipping", channel.name)
            summary.skipped.append(channel.name)
            continue
        if not ignore and not channel.crawl_due(now):
            next_at = channel.next_crawl_at()
            LOGGER.info(
                "Channel %s not due for %.1f more minutes",
                channel.name,
                (next_at - now) / timedelta(minutes=1) if next_at else 0.0,
            )
            summary.skipped.append(channel.name)
            continue
        due.append(channel)

    future_to_channel: dict[Future, ChannelRecord] = {}

    def _drain_completed(*, block_until_empty: bool) -> None:
        while future_to_channel:
            done, _ = wait(tuple(future_to_channel), return_when=FIRST_COMPLETED)
            for finished in done:
                channel = future_to_channel.pop(finished)
                try:
                    results = finished.result()
                except CrawlError as exc:
                    LOGGER.error("Crawl of channel %s failed: %s", channel.name, exc)
                    summary.failed[channel.name] = str(exc)
                    continue
                except Exception as exc:  # pragma: no cover - unexpected worker failure
                    LOGGER.exception("Unexpected error crawling channel %s", channel.name)
                    summary.failed[channel.name] = str(exc)
                    continue
                summary.crawled.append(channel.name)
                failures = [failure for result in results for failure in result.failures if not failure.blocked]
                if failures:
                    summary.failed[channel.name] = "; ".join(
                        f"{failure.url}: {failure.reason}" for failure in failures
                    )
            if not block_until_empty:
                break

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        for channel in due:
            if cancel is not None and cancel.is_set():
                LOGGER.warning("Run cancelled; not starting remaining channels")
                break
            future = executor.submit(
                _run_channel,
                orchestrator,
                channel,
                ignore=ignore,
                resume=resume,
                cancel=cancel,
            )
            future_to_channel[future] = channel
            if len(future_to_channel) >= max_workers:
                _drain_completed(block_until_empty=False)
        _drain_completed(block_until_empty=True)

    LOGGER.info(
        "Checked %d channel(s): %d crawled, %d skipped, %d failed",
        len(channels),
        len(summary.crawled),
        len(summary.skipped),
        len(summary.failed),
    )
    return summary


def build_orchestrator(config: CrawlConfig, store: ChannelStore, *, fetcher_name: str) -> CrawlOrchestrator:
    resolver = CookieResolver(
        config.cookie_dir,
        login_cache=LoginCookieCache(),
        browser_manager=BrowserCookieManager(BrowserCookie3Source()),
        client_factory=login_client_factory(config),
    )
    if fetcher_name == "celery":
        fetcher = CeleryFetcher()
    else:
        fetcher = YtDlpFetcher(config.ytdlp_binary)
    return CrawlOrchestrator(
        store,
        SiteAwareScraper(config),
        fetcher,
        resolver,
        ledger=BlockLedger(store),
        locks=ChannelLocks(),
        retry=config.retry,
        notifier=Notifier(user_agent=config.user_agent),
        fetch_timeout=config.timeout.fetch_timeout,
    )


def _install_cancel_handler(cancel: threading.Event) -> None:
    def _handler(signum, _frame) -> None:
        LOGGER.warning("Received signal %s; finishing running fetches before exit", signum)
        cancel.set()

    signal.signal(signal.SIGTERM, _handler)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))
    if args.download and len(args.channel) != 1:
        parser.error("--download needs exactly one --channel")

    config.ensure_directories()
    file_handler = attach_file_logging(config.log_dir)
    try:
        return _run(args, config)
    finally:
        detach_file_logging(file_handler)


def _run(args: argparse.Namespace, config: CrawlConfig) -> int:
    engine = create_engine(config.db_url)
    Base.metadata.create_all(engine)  # ensure required tables exist before queries
    SessionLocal = sessionmaker(bind=engine)

    controller = ProgramController(SessionLocal, stale_after=timedelta(seconds=config.lock.stale_after))
    try:
        controller.start()
    except ProgramAlreadyRunningError as exc:
        LOGGER.error("%s", exc)
        engine.dispose()
        return 2

    heartbeat = HeartbeatThread(controller, config.lock.heartbeat_interval)
    heartbeat.start()
    cancel = threading.Event()
    _install_cancel_handler(cancel)

    store = ChannelStore(SessionLocal)
    orchestrator = build_orchestrator(config, store, fetcher_name=args.fetcher)
    try:
        if args.download:
            channel = store.get_channel("name", args.channel[0])
            result = orchestrator.download_urls(channel, args.download, cancel=cancel)
            return 1 if result.failed else 0

        summary = check_channels(
            store,
            orchestrator,
            names=args.channel,
            ignore=args.ignore_run,
            resume=args.resume,
            max_workers=config.global_concurrency,
            cancel=cancel,
        )
        return 0 if summary.ok else 1
    except KeyboardInterrupt:
        cancel.set()
        LOGGER.warning("Interrupted")
        return 130
    except CrawlError as exc:
        LOGGER.error("%s", exc)
        return 1
    finally:
        heartbeat.stop(timeout=5.0)
        try:
            controller.quit()
        except ProgramLockError as exc:
            LOGGER.warning("Failed to release run lock: %s", exc)
        engine.dispose()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
