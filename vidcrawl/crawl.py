"""Crawl orchestration: discover new videos for a channel and hand them to the fetcher."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from models import DownloadStatus

from .blocking import BlockContext, BlockLedger, block_context_for, is_blocked
from .config import MAX_CONCURRENCY, RetryConfig
from .cookies import CookieResolutionError, CookieResolver, ResolvedCookies
from .errors import BotBlockedError, FetchError, TransientFetchError, ValidationError
from .fetcher import Fetcher, FetchOptions, FetchResult
from .notify import Notifier
from .scraper import Scraper
from .store import (
    ChannelLocks,
    ChannelLockToken,
    ChannelRecord,
    ChannelStore,
    ChannelURLRecord,
    DuplicateVideoError,
    NewVideo,
    VideoRecord,
)
from .urls import base_domain, filter_new_urls, normalize_url

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class UrlFailure:
    url: str
    reason: str
    blocked: bool = False


@dataclass(slots=True)
class CrawlResult:
    channel_name: str
    new_videos: list[VideoRecord] = field(default_factory=list)
    downloaded: list[VideoRecord] = field(default_factory=list)
    failures: list[UrlFailure] = field(default_factory=list)
    # Video URLs left Pending (bot block or cancellation); picked up by resume_unfinished.
    abandoned: list[str] = field(default_factory=list)
    blocked_hostnames: set[str] = field(default_factory=set)
    cancelled: bool = False

    @property
    def failed(self) -> bool:
        return any(not failure.blocked for failure in self.failures)


@dataclass(slots=True)
class _Target:
    channel_url: ChannelURLRecord
    context: BlockContext
    cookies: ResolvedCookies


@dataclass(slots=True)
class _Job:
    video: VideoRecord
    hostname: str
    context: BlockContext
    cookie_file: Optional[Path]


@dataclass(slots=True)
class _Outcome:
    job: _Job
    status: str
    message: str = ""
    result: Optional[FetchResult] = None
    hostname: str = ""


class CrawlOrchestrator:
    """Runs discovery and dispatch for one channel at a time."""

    def __init__(
        self,
        store: ChannelStore,
        scraper: Scraper,
        fetcher: Fetcher,
        resolver: CookieResolver,
        *,
        ledger: BlockLedger | None = None,
        locks: ChannelLocks | None = None,
        retry: RetryConfig | None = None,
        fetch_timeout: float = 3600.0,
        sleep: Callable[[float], None] = time.sleep,
        notifier: Notifier | None = None,
    ) -> None:
        self._store = store
        self._scraper = scraper
        self._fetcher = fetcher
        self._resolver = resolver
        self._ledger = ledger or BlockLedger(store)
        self._locks = locks or ChannelLocks()
        self._retry = retry or RetryConfig()
        self._fetch_timeout = fetch_timeout
        self._sleep = sleep
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Public operations

    def crawl_channel(
        self,
        channel: ChannelRecord,
        *,
        cancel: threading.Event | None = None,
    ) -> CrawlResult:
        result = CrawlResult(channel.name)
        with self._locks.hold(channel.id) as token:
            targets = self._crawlable_targets(channel, token, result)
            if not targets:
                LOGGER.info("No crawlable URLs for channel %s; skipping", channel.name)
                return result

            discovered, scanned = self._discover(channel, targets, token, result)
            if discovered:
                jobs = self._insert_new_videos(channel, discovered, result)
                if channel.settings.auto_download:
                    self._dispatch(channel, jobs, token, result, cancel)
                else:
                    LOGGER.info(
                        "Auto download disabled for channel %s; %d video(s) left pending",
                        channel.name,
                        len(jobs),
                    )

            self._store.update_channel_url_last_scan(scanned)
            self._store.update_last_scan(channel.id)

        self._notify(channel, result)
        self._log_summary(result)
        return result

    def crawl_channel_ignore(self, channel: ChannelRecord) -> CrawlResult:
        """Record every currently listed video as finished without fetching anything."""

        result = CrawlResult(channel.name)
        with self._locks.hold(channel.id) as token:
            targets = self._crawlable_targets(channel, token, result)
            if not targets:
                LOGGER.info("No crawlable URLs for channel %s; nothing to ignore", channel.name)
                return result
            discovered, _scanned = self._discover(channel, targets, token, result)
            if discovered:
                result.new_videos = self._store.add_videos(
                    channel.id,
                    [NewVideo(url=url, channel_url_id=target.channel_url.id) for url, target in discovered],
                    ignored=True,
                )
        LOGGER.info("Ignore crawl for %s marked %d video(s) as finished", channel.name, len(result.new_videos))
        return result

    def resume_unfinished(
        self,
        channel: ChannelRecord,
        *,
        cancel: threading.Event | None = None,
    ) -> CrawlResult:
        """Dispatch videos left Pending or Failed by earlier runs."""

        result = CrawlResult(channel.name)
        with self._locks.hold(channel.id) as token:
            self._ledger.check_or_unlock(channel, lock_token=token)
            videos = self._store.unfinished_videos(channel.id)
            if not videos:
                return result
            LOGGER.info("Resuming %d unfinished video(s) for channel %s", len(videos), channel.name)
            jobs = self._jobs_for_videos(channel, videos, result)
            self._dispatch(channel, jobs, token, result, cancel)
        self._notify(channel, result)
        self._log_summary(result)
        return result

    def download_urls(
        self,
        channel: ChannelRecord,
        urls: Iterable[str],
        *,
        cancel: threading.Event | None = None,
    ) -> CrawlResult:
        """Fetch explicit video URLs under the channel's manual download URL."""

        cleaned = [url.strip() for url in urls if url and url.strip()]
        if not cleaned:
            raise ValidationError("no video URLs given")

        result = CrawlResult(channel.name)
        with self._locks.hold(channel.id) as token:
            known = {normalize_url(url) for url in self._store.known_video_urls(channel.id)}
            duplicates = [url for url in cleaned if normalize_url(url) in known]
            if duplicates:
                raise DuplicateVideoError(
                    f"channel {channel.name!r} already has video(s): {', '.join(duplicates)}"
                )

            self._ledger.check_or_unlock(channel, lock_token=token)
            manual = self._store.ensure_manual_channel_url(channel.id)
            if channel.url_by_id(manual.id) is None:
                channel.urls.append(manual)

            result.new_videos = self._store.add_videos(
                channel.id,
                [NewVideo(url=url, channel_url_id=manual.id) for url in cleaned],
            )
            jobs = self._jobs_for_videos(channel, result.new_videos, result)
            self._dispatch(channel, jobs, token, result, cancel)
        self._notify(channel, result)
        self._log_summary(result)
        return result

    # ------------------------------------------------------------------
    # Discovery

    def _crawlable_targets(
        self,
        channel: ChannelRecord,
        token: ChannelLockToken,
        result: CrawlResult,
    ) -> list[tuple[ChannelURLRecord, BlockContext]]:
        report = self._ledger.check_or_unlock(channel, lock_token=token)
        if not report.unlocked:
            LOGGER.info(
                "Channel %s still has %d blocked hostname(s): %s",
                channel.name,
                len(report.remaining),
                ", ".join(sorted(report.remaining)),
            )

        targets: list[tuple[ChannelURLRecord, BlockContext]] = []
        for channel_url in channel.urls:
            if channel_url.is_manual or channel_url.paused:
                continue
            context = block_context_for(channel_url, channel.settings)
            host = base_domain(channel_url.url)
            if is_blocked(channel.settings, host, context):
                LOGGER.info("Skipping %s for channel %s: %s is blocked (%s)", channel_url.url, channel.name, host, context.value)
                result.blocked_hostnames.add(host)
                continue
            targets.append((channel_url, context))
        return targets

    def _discover(
        self,
        channel: ChannelRecord,
        targets: list[tuple[ChannelURLRecord, BlockContext]],
        token: ChannelLockToken,
        result: CrawlResult,
    ) -> tuple[list[tuple[str, _Target]], list]:
        seen = {normalize_url(url) for url in self._store.known_video_urls(channel.id)}
        discovered: list[tuple[str, _Target]] = []
        scanned = []

        for channel_url, context in targets:
            cookies = self._resolve_cookies(channel, channel_url, result)
            if cookies is None:
                continue
            target = _Target(channel_url=channel_url, context=context, cookies=cookies)

            try:
                candidates = self._scraper.list_video_urls(
                    channel_url.url,
                    cookies.cookies,
                    cookie_file=cookies.cookie_file,
                )
            except BotBlockedError as exc:
                host = exc.hostname or base_domain(channel_url.url)
                self._record_block(channel, host, context, token, result)
                result.failures.append(UrlFailure(channel_url.url, str(exc), blocked=True))
                continue
            except FetchError as exc:
                LOGGER.warning("Failed to list videos at %s for channel %s: %s", channel_url.url, channel.name, exc)
                result.failures.append(UrlFailure(channel_url.url, str(exc)))
                continue

            scanned.append(channel_url.id)
            fresh = filter_new_urls(candidates, seen)
            seen.update(normalize_url(url) for url in fresh)
            discovered.extend((url, target) for url in fresh)
            LOGGER.info(
                "Found %d new video(s) at %s (%d listed)",
                len(fresh),
                channel_url.url,
                len(candidates),
            )
        return discovered, scanned

    def _resolve_cookies(
        self,
        channel: ChannelRecord,
        channel_url: ChannelURLRecord,
        result: CrawlResult,
    ) -> ResolvedCookies | None:
        try:
            return self._resolver.resolve(channel, channel_url)
        except CookieResolutionError as exc:
            settings = channel.settings
            if settings.use_global_cookies and settings.require_cookies:
                LOGGER.error("Cookies required for %s but unavailable: %s", channel_url.url, exc)
                result.failures.append(UrlFailure(channel_url.url, str(exc)))
                return None
            LOGGER.warning("Cookie resolution failed for %s, continuing unauthenticated: %s", channel_url.url, exc)
            return ResolvedCookies()

    def _insert_new_videos(
        self,
        channel: ChannelRecord,
        discovered: list[tuple[str, _Target]],
        result: CrawlResult,
    ) -> list[_Job]:
        targets = {normalize_url(url): target for url, target in discovered}
        records = self._store.add_videos(
            channel.id,
            [NewVideo(url=url, channel_url_id=target.channel_url.id) for url, target in discovered],
        )
        result.new_videos.extend(records)

        jobs = []
        for video in records:
            target = targets[normalize_url(video.url)]
            jobs.append(
                _Job(
                    video=video,
                    hostname=base_domain(video.url),
                    context=target.context,
                    cookie_file=target.cookies.cookie_file,
                )
            )
        return jobs

    def _jobs_for_videos(
        self,
        channel: ChannelRecord,
        videos: list[VideoRecord],
        result: CrawlResult,
    ) -> list[_Job]:
        resolved: dict[tuple, Optional[ResolvedCookies]] = {}
        jobs = []
        for video in videos:
            source = self._source_for(channel, video)
            context = block_context_for(source, channel.settings)
            host = base_domain(video.url)
            if is_blocked(channel.settings, host, context):
                result.blocked_hostnames.add(host)
                result.abandoned.append(video.url)
                continue

            key = (source.id, base_domain(source.url))
            if key not in resolved:
                resolved[key] = self._resolve_cookies(channel, source, result)
            cookies = resolved[key]
            if cookies is None:
                continue
            jobs.append(_Job(video=video, hostname=host, context=context, cookie_file=cookies.cookie_file))
        return jobs

    @staticmethod
    def _source_for(channel: ChannelRecord, video: VideoRecord) -> ChannelURLRecord:
        channel_url = channel.url_by_id(video.channel_url_id)
        if channel_url is None:
            return ChannelURLRecord(
                id=video.channel_url_id or video.id,
                channel_id=channel.id,
                url=video.url,
                is_manual=True,
            )
        if channel_url.is_manual:
            # Manual downloads resolve cookies against the video's own site.
            return dataclasses.replace(channel_url, url=video.url)
        return channel_url

    # ------------------------------------------------------------------
    # Dispatch

    def _dispatch(
        self,
        channel: ChannelRecord,
        jobs: list[_Job],
        token: ChannelLockToken,
        result: CrawlResult,
        cancel: threading.Event | None,
    ) -> None:
        if not jobs:
            return

        settings = channel.settings
        max_workers = max(1, min(settings.concurrency, MAX_CONCURRENCY))
        options = FetchOptions.from_settings(settings, timeout=self._fetch_timeout)
        abandoned: set[str] = set()
        guard = threading.Lock()
        future_to_job: dict[Future, _Job] = {}

        def _drain_completed(*, block_until_empty: bool) -> None:
            while future_to_job:
                done, _ = wait(tuple(future_to_job), return_when=FIRST_COMPLETED)
                for finished in done:
                    job = future_to_job.pop(finished)
                    try:
                        outcome = finished.result()
                    except Exception as exc:  # pragma: no cover - unexpected worker failure
                        LOGGER.exception("Worker raised unexpectedly for %s", job.video.url)
                        outcome = _Outcome(job, "failed", str(exc))
                    self._apply_outcome(channel, outcome, token, result)
                if not block_until_empty:
                    break

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for index, job in enumerate(jobs):
                if cancel is not None and cancel.is_set():
                    LOGGER.warning("Crawl of %s cancelled; %d video(s) left pending", channel.name, len(jobs) - index)
                    result.cancelled = True
                    result.abandoned.extend(item.video.url for item in jobs[index:])
                    break
                with guard:
                    host_abandoned = job.hostname in abandoned
                if host_abandoned:
                    LOGGER.info("Skipping %s: %s blocked earlier in this pass", job.video.url, job.hostname)
                    result.abandoned.append(job.video.url)
                    continue

                self._store.update_video_status(job.video.id, DownloadStatus.DOWNLOADING, percentage=0.0)
                future = executor.submit(self._fetch_with_retry, job, options, abandoned, guard, cancel)
                future_to_job[future] = job
                if len(future_to_job) >= max_workers:
                    _drain_completed(block_until_empty=False)

            _drain_completed(block_until_empty=True)

    def _fetch_with_retry(
        self,
        job: _Job,
        options: FetchOptions,
        abandoned: set[str],
        guard: threading.Lock,
        cancel: threading.Event | None,
    ) -> _Outcome:
        attempts = max(0, options.retries) + 1
        last_error: FetchError | None = None
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                return _Outcome(job, "skipped", "crawl cancelled")
            with guard:
                if job.hostname in abandoned:
                    return _Outcome(job, "skipped", f"{job.hostname} blocked earlier in this pass")

            try:
                fetched = self._fetcher.fetch(job.video.url, job.cookie_file, options)
                return _Outcome(job, "ok", result=fetched)
            except BotBlockedError as exc:
                host = exc.hostname or job.hostname
                with guard:
                    abandoned.add(job.hostname)
                    abandoned.add(host)
                return _Outcome(job, "blocked", str(exc), hostname=host)
            except TransientFetchError as exc:
                last_error = exc
                if attempt < attempts:
                    delay = self._retry.base_delay * attempt
                    LOGGER.warning(
                        "Transient failure fetching %s (attempt %d/%d): %s; retrying in %.1fs",
                        job.video.url,
                        attempt,
                        attempts,
                        exc,
                        delay,
                    )
                    self._sleep(delay)
            except FetchError as exc:
                return _Outcome(job, "failed", str(exc))

        return _Outcome(job, "failed", str(last_error))

    def _apply_outcome(
        self,
        channel: ChannelRecord,
        outcome: _Outcome,
        token: ChannelLockToken,
        result: CrawlResult,
    ) -> None:
        job = outcome.job
        video = job.video
        if outcome.status == "ok":
            fetched = outcome.result
            metadata = dict(fetched.metadata) if fetched else {}
            if fetched and fetched.file_path:
                metadata["file_path"] = fetched.file_path
            record = self._store.update_video_status(
                video.id,
                DownloadStatus.FINISHED,
                percentage=100.0,
                title=fetched.title if fetched else None,
                metadata=metadata or None,
            )
            result.downloaded.append(record)
            LOGGER.info("Fetched %s", video.url)
        elif outcome.status == "blocked":
            self._record_block(channel, outcome.hostname or job.hostname, job.context, token, result)
            self._store.update_video_status(video.id, DownloadStatus.PENDING, percentage=0.0, error=outcome.message)
            result.failures.append(UrlFailure(video.url, outcome.message, blocked=True))
            result.abandoned.append(video.url)
        elif outcome.status == "skipped":
            self._store.update_video_status(video.id, DownloadStatus.PENDING, percentage=0.0)
            result.abandoned.append(video.url)
        else:
            LOGGER.error("Failed to fetch %s: %s", video.url, outcome.message)
            self._store.update_video_status(video.id, DownloadStatus.FAILED, error=outcome.message)
            result.failures.append(UrlFailure(video.url, outcome.message))

    def _record_block(
        self,
        channel: ChannelRecord,
        hostname: str,
        context: BlockContext,
        token: ChannelLockToken,
        result: CrawlResult,
    ) -> None:
        host = base_domain(hostname)
        result.blocked_hostnames.add(host)
        if channel.settings.find_block(host, context.value) is not None:
            return
        channel.settings = self._ledger.record_block(channel.id, host, context, lock_token=token)

    # ------------------------------------------------------------------
    # Notifications

    def _notify(self, channel: ChannelRecord, result: CrawlResult) -> None:
        if self._notifier is None or not result.downloaded:
            return
        channel_urls_with_new = {
            source.url
            for source in (channel.url_by_id(video.channel_url_id) for video in result.downloaded)
            if source is not None
        }
        failures = self._notifier.notify(
            channel.name,
            self._store.notify_urls(channel.id),
            sorted(channel_urls_with_new),
        )
        result.failures.extend(UrlFailure(url, reason) for url, reason in failures)

    @staticmethod
    def _log_summary(result: CrawlResult) -> None:
        LOGGER.info(
            "Channel %s: %d new, %d fetched, %d failed, %d left pending%s",
            result.channel_name,
            len(result.new_videos),
            len(result.downloaded),
            len([failure for failure in result.failures if not failure.blocked]),
            len(result.abandoned),
            f", blocked by {', '.join(sorted(result.blocked_hostnames))}" if result.blocked_hostnames else "",
        )
