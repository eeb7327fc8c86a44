"""Hand-off of individual videos to the download pipeline."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

from .errors import (
    BotBlockedError,
    FatalFetchError,
    TransientFetchError,
    classify_fetch_failure,
)
from .settings import ChannelSettings, DownloadFilter

LOGGER = logging.getLogger(__name__)

DEFAULT_OUTPUT_TEMPLATE = "%(title)s.%(ext)s"


def _filter_clause(item: DownloadFilter) -> str:
    operator = "*=" if item.type == "contains" else "!*="
    value = item.value.replace("\\", "\\\\").replace("'", "\\'")
    return f"{item.field}{operator}'{value}'"


def build_match_filters(filters: list[DownloadFilter]) -> list[str]:
    """Translate channel download filters into yt-dlp ``--match-filters`` expressions.

    Every "must" filter is and-ed into each expression; "any" filters become
    alternative expressions (yt-dlp ors repeated ``--match-filters``).
    """

    must = [_filter_clause(item) for item in filters if item.must_any == "must"]
    any_of = [_filter_clause(item) for item in filters if item.must_any == "any"]
    if not any_of:
        return ["&".join(must)] if must else []
    return ["&".join(must + [clause]) for clause in any_of]


@dataclass(slots=True)
class FetchOptions:
    output_dir: Optional[str] = None
    output_ext: str = ""
    max_filesize: str = ""
    external_downloader: str = ""
    external_downloader_args: str = ""
    extra_args: str = ""
    from_date: str = ""
    to_date: str = ""
    match_filters: list[str] = field(default_factory=list)
    retries: int = 0
    timeout: float = 3600.0

    @classmethod
    def from_settings(cls, settings: ChannelSettings, *, timeout: float) -> "FetchOptions":
        return cls(
            output_dir=settings.video_dir or None,
            output_ext=settings.ytdlp_output_ext,
            max_filesize=settings.max_filesize,
            external_downloader=settings.external_downloader,
            external_downloader_args=settings.external_downloader_args,
            extra_args=settings.extra_ytdlp_video_args,
            from_date=settings.from_date,
            to_date=settings.to_date,
            match_filters=build_match_filters(settings.filters),
            retries=settings.retries,
            timeout=timeout,
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FetchOptions":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in payload.items() if key in known})


@dataclass(slots=True)
class FetchResult:
    url: str
    title: Optional[str] = None
    file_path: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class Fetcher(Protocol):
    def fetch(self, video_url: str, cookie_file: Path | None, options: FetchOptions) -> FetchResult:
        ...


class YtDlpFetcher:
    """Downloads a single video with the ``yt-dlp`` binary."""

    def __init__(
        self,
        binary: str = "yt-dlp",
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._binary = binary
        self._runner = runner

    def build_command(self, video_url: str, cookie_file: Path | None, options: FetchOptions) -> list[str]:
        command = [self._binary, "--no-progress", "--no-playlist"]
        template = DEFAULT_OUTPUT_TEMPLATE
        if options.output_dir:
            template = str(Path(options.output_dir) / DEFAULT_OUTPUT_TEMPLATE)
        command.extend(["-o", template])
        if options.output_ext:
            command.extend(["--merge-output-format", options.output_ext])
        if options.max_filesize:
            command.extend(["--max-filesize", options.max_filesize])
        if options.external_downloader:
            command.extend(["--downloader", options.external_downloader])
            if options.external_downloader_args:
                command.extend(
                    ["--downloader-args", f"{options.external_downloader}:{options.external_downloader_args}"]
                )
        if options.from_date:
            command.extend(["--dateafter", options.from_date])
        if options.to_date:
            command.extend(["--datebefore", options.to_date])
        for expression in options.match_filters:
            command.extend(["--match-filters", expression])
        if cookie_file is not None:
            command.extend(["--cookies", str(cookie_file)])
        if options.extra_args:
            command.extend(shlex.split(options.extra_args))
        command.extend(["--print", "after_move:filepath", "--print", "after_move:title"])
        command.append(video_url)
        return command

    def fetch(self, video_url: str, cookie_file: Path | None, options: FetchOptions) -> FetchResult:
        command = self.build_command(video_url, cookie_file, options)
        LOGGER.debug("Running %s", shlex.join(command))
        try:
            completed = self._runner(command, capture_output=True, text=True, timeout=options.timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransientFetchError(
                f"{video_url}: download timed out after {options.timeout:.0f}s", url=video_url
            ) from exc
        except FileNotFoundError as exc:
            raise FatalFetchError(f"{self._binary} is not installed", url=video_url) from exc

        if completed.returncode != 0:
            raise classify_fetch_failure(video_url, completed.stderr or completed.stdout or "")

        lines = [line.strip() for line in (completed.stdout or "").splitlines() if line.strip()]
        file_path = lines[0] if lines else None
        title = lines[1] if len(lines) > 1 else None
        return FetchResult(url=video_url, title=title, file_path=file_path)


class CeleryFetcher:
    """Sends each video to the ``vidcrawl.fetch_video`` Celery task and waits for the outcome."""

    def __init__(self, task=None, *, wait_timeout: float | None = None) -> None:
        if task is None:
            from .tasks import fetch_video_task

            task = fetch_video_task
        self._task = task
        self._wait_timeout = wait_timeout

    def fetch(self, video_url: str, cookie_file: Path | None, options: FetchOptions) -> FetchResult:
        job = {
            "url": video_url,
            "cookie_file": str(cookie_file) if cookie_file else None,
            "options": options.to_payload(),
        }
        async_result = self._task.apply_async(args=(job,))
        timeout = self._wait_timeout if self._wait_timeout is not None else options.timeout
        outcome = async_result.get(timeout=timeout)
        return outcome_to_result(video_url, outcome)


def result_to_outcome(result: FetchResult) -> dict[str, Any]:
    return {"status": "ok", **asdict(result)}


def error_to_outcome(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, BotBlockedError):
        return {"status": "blocked", "hostname": exc.hostname, "message": str(exc)}
    if isinstance(exc, TransientFetchError):
        return {"status": "transient", "message": str(exc)}
    return {"status": "failed", "message": str(exc)}


def outcome_to_result(video_url: str, outcome: Mapping[str, Any]) -> FetchResult:
    status = outcome.get("status")
    message = str(outcome.get("message") or "")
    if status == "ok":
        return FetchResult(
            url=outcome.get("url") or video_url,
            title=outcome.get("title"),
            file_path=outcome.get("file_path"),
            metadata=dict(outcome.get("metadata") or {}),
        )
    if status == "blocked":
        raise BotBlockedError(outcome.get("hostname") or "", url=video_url, detail=message)
    if status == "transient":
        raise TransientFetchError(message, url=video_url)
    raise FatalFetchError(message or f"fetch of {video_url} failed", url=video_url)
