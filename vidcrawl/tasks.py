"""Celery tasks for asynchronous video fetching."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

from celery import Task

from .celery_app import celery_app
from .config import DEFAULT_YTDLP_BINARY
from .errors import FetchError
from .fetcher import FetchOptions, YtDlpFetcher, error_to_outcome, result_to_outcome

LOGGER = logging.getLogger(__name__)


# No autoretry: the crawl orchestrator owns retries and must see bot blocks immediately.
@celery_app.task(name="vidcrawl.fetch_video", bind=True)
def fetch_video_task(self: Task, job: Mapping[str, Any]) -> dict[str, Any]:
    url = str(job["url"])
    cookie_file_raw = job.get("cookie_file")
    cookie_file = Path(cookie_file_raw) if cookie_file_raw else None
    options = FetchOptions.from_payload(job.get("options") or {})
    binary = os.getenv("VIDCRAWL_YTDLP_BINARY") or DEFAULT_YTDLP_BINARY

    try:
        result = YtDlpFetcher(binary).fetch(url, cookie_file, options)
    except FetchError as exc:
        LOGGER.warning("Fetch task failed for %s: %s", url, exc)
        return error_to_outcome(exc)

    LOGGER.info("Fetched %s", url)
    return result_to_outcome(result)
