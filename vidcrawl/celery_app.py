"""Celery application that runs video fetches on worker processes."""

from __future__ import annotations

import os
from typing import Mapping

from celery import Celery

from .config import load_crawl_config

FETCH_QUEUE = "vidcrawl.fetch"
# Seconds a fetch may overrun its soft limit before the worker kills it.
HARD_LIMIT_GRACE = 60


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def create_celery_app(env: Mapping[str, str] | None = None) -> Celery:
    """Build the fetch-queue app.

    Without ``VIDCRAWL_CELERY_BROKER_URL`` the app uses an in-memory broker and
    runs tasks eagerly, so ``--fetcher celery`` works on a single host. Fetch
    time limits follow ``VIDCRAWL_FETCH_TIMEOUT``.
    """

    if env is None:
        env = os.environ
    config = load_crawl_config(env)
    queue = env.get("VIDCRAWL_CELERY_QUEUE") or FETCH_QUEUE
    soft_limit = int(config.timeout.fetch_timeout) or None

    app = Celery(
        "vidcrawl",
        broker=env.get("VIDCRAWL_CELERY_BROKER_URL") or "memory://",
        backend=env.get("VIDCRAWL_CELERY_RESULT_BACKEND") or "cache+memory://",
        include=["vidcrawl.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=_env_flag(env, "VIDCRAWL_CELERY_TASK_ALWAYS_EAGER", True),
        task_default_queue=queue,
        task_routes={"vidcrawl.fetch_video": {"queue": queue}},
        task_track_started=True,
        task_soft_time_limit=soft_limit,
        task_time_limit=soft_limit + HARD_LIMIT_GRACE if soft_limit else None,
        # One yt-dlp download per worker slot at a time.
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        broker_connection_retry_on_startup=True,
    )
    return app


celery_app = create_celery_app()


__all__ = ["FETCH_QUEUE", "celery_app", "create_celery_app"]
