"""Database access for channels, channel URLs and videos.

Settings blobs are only ever changed through :meth:`ChannelStore.update_settings`
and :meth:`ChannelStore.update_postprocess_args`, which run a read-modify-write
cycle on a single row. There is no compare-and-swap at the SQL level; callers
must hold the channel's :class:`ChannelLockToken` for the duration of the call.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence
from urllib.parse import urlsplit
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Channel, ChannelURL, DownloadStatus, Notification, Video

from .errors import CrawlError, ValidationError
from .settings import ChannelSettings, PostProcessArgs, utcnow
from .urls import normalize_url

LOGGER = logging.getLogger(__name__)

MANUAL_DOWNLOADS_URL = "manual-downloads"

_SELECTOR_COLUMNS = {"id": Channel.id, "name": Channel.name}


class StorePersistenceError(CrawlError):
    """Raised when a row is missing or a database operation fails."""


class SettingsUpdateError(CrawlError):
    """Raised when a settings mutation is aborted or rejected; nothing was written."""


class DuplicateVideoError(CrawlError):
    """Raised when a video URL is already recorded for the channel."""


@dataclass(slots=True)
class ChannelURLSpec:
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    login_url: Optional[str] = None


@dataclass(slots=True)
class ChannelURLRecord:
    id: UUID
    channel_id: UUID
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    login_url: Optional[str] = None
    is_manual: bool = False
    paused: bool = False
    last_scan: Optional[datetime] = None

    @property
    def has_login(self) -> bool:
        return bool(self.username and self.login_url)


@dataclass(slots=True)
class ChannelRecord:
    id: UUID
    name: str
    settings: ChannelSettings
    postprocess_args: PostProcessArgs
    urls: list[ChannelURLRecord] = field(default_factory=list)
    last_scan: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def crawl_urls(self) -> list[ChannelURLRecord]:
        return [item for item in self.urls if not item.is_manual]

    def url_by_id(self, url_id: UUID | None) -> ChannelURLRecord | None:
        for item in self.urls:
            if item.id == url_id:
                return item
        return None

    def next_crawl_at(self) -> datetime | None:
        if self.last_scan is None:
            return None
        return self.last_scan + timedelta(minutes=self.settings.crawl_freq)

    def crawl_due(self, now: datetime | None = None) -> bool:
        next_at = self.next_crawl_at()
        if next_at is None:
            return True
        return (now or utcnow()) >= next_at


@dataclass(slots=True)
class VideoRecord:
    id: UUID
    channel_id: UUID
    channel_url_id: Optional[UUID]
    url: str
    finished: bool = False
    ignored: bool = False
    status: DownloadStatus = DownloadStatus.PENDING
    percentage: float = 0.0
    title: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class NewVideo:
    url: str
    channel_url_id: Optional[UUID] = None
    title: Optional[str] = None


@dataclass(slots=True)
class NotificationRecord:
    id: UUID
    channel_id: UUID
    name: str
    notify_url: str
    channel_url: Optional[str] = None


class ChannelLockToken:
    """Proof that the holder owns a channel's in-process exclusion lock."""

    __slots__ = ("channel_id", "_active")

    def __init__(self, channel_id: UUID) -> None:
        self.channel_id = channel_id
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _release(self) -> None:
        self._active = False

    def __repr__(self) -> str:
        return f"<ChannelLockToken(channel_id={self.channel_id}, active={self._active})>"


class ChannelLocks:
    """Hands out one non-reentrant lock per channel id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}

    def _lock_for(self, channel_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[channel_id] = lock
            return lock

    @contextmanager
    def hold(self, channel_id: UUID) -> Iterator[ChannelLockToken]:
        lock = self._lock_for(channel_id)
        lock.acquire()
        token = ChannelLockToken(channel_id)
        try:
            yield token
        finally:
            token._release()
            lock.release()


def _url_record(row: ChannelURL) -> ChannelURLRecord:
    return ChannelURLRecord(
        id=row.id,
        channel_id=row.channel_id,
        url=row.url,
        username=row.username,
        password=row.password,
        login_url=row.login_url,
        is_manual=bool(row.is_manual),
        paused=bool(row.paused),
        last_scan=row.last_scan,
    )


def _channel_record(row: Channel) -> ChannelRecord:
    return ChannelRecord(
        id=row.id,
        name=row.name,
        settings=ChannelSettings.from_dict(row.settings),
        postprocess_args=PostProcessArgs.from_dict(row.postprocess_args),
        urls=[_url_record(item) for item in row.urls],
        last_scan=row.last_scan,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _video_record(row: Video) -> VideoRecord:
    return VideoRecord(
        id=row.id,
        channel_id=row.channel_id,
        channel_url_id=row.channel_url_id,
        url=row.url,
        finished=bool(row.finished),
        ignored=bool(row.ignored),
        status=row.download_status,
        percentage=row.percentage or 0.0,
        title=row.title,
        error=row.error,
    )


def _notification_record(row: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        channel_id=row.channel_id,
        name=row.name,
        notify_url=row.notify_url,
        channel_url=row.channel_url,
    )


class ChannelStore:
    """Channel, channel URL and video persistence on top of a SQLAlchemy session factory."""

    def __init__(self, session_factory, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Channels

    def add_channel(
        self,
        name: str,
        urls: Sequence[str | ChannelURLSpec],
        *,
        settings: ChannelSettings | None = None,
        postprocess_args: PostProcessArgs | None = None,
    ) -> ChannelRecord:
        """Create a channel with its URLs in a single transaction."""

        name = (name or "").strip()
        if not name:
            raise ValidationError("channel name is required")
        specs = [ChannelURLSpec(url=item) if isinstance(item, str) else item for item in urls]
        specs = [spec for spec in specs if spec.url and spec.url.strip()]
        if not specs:
            raise ValidationError(f"channel {name!r} needs at least one URL")
        normalized = [normalize_url(spec.url) for spec in specs]
        if len(set(normalized)) != len(normalized):
            raise ValidationError(f"channel {name!r} lists the same URL more than once")

        settings = settings or ChannelSettings()
        postprocess_args = postprocess_args or PostProcessArgs()
        settings.validate()
        postprocess_args.validate()

        try:
            with self._session_factory() as session:
                channel = Channel(
                    name=name,
                    settings=settings.to_dict(),
                    postprocess_args=postprocess_args.to_dict(),
                )
                for spec in specs:
                    channel.urls.append(
                        ChannelURL(
                            url=spec.url.strip(),
                            username=spec.username,
                            password=spec.password,
                            login_url=spec.login_url,
                        )
                    )
                session.add(channel)
                session.commit()
                LOGGER.info("Added channel %s with %d URL(s)", name, len(specs))
                return _channel_record(channel)
        except IntegrityError as exc:
            raise StorePersistenceError(f"channel {name!r} already exists") from exc
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def get_channel(self, key: str, value: Any) -> ChannelRecord:
        try:
            with self._session_factory() as session:
                return _channel_record(self._channel_row(session, key, value))
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def find_channel_by_url(self, url: str) -> ChannelRecord | None:
        target = normalize_url(url)
        try:
            with self._session_factory() as session:
                for row in session.query(ChannelURL).filter(ChannelURL.is_manual.is_(False)):
                    if normalize_url(row.url) == target:
                        return _channel_record(row.channel)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc
        return None

    def list_channels(self) -> list[ChannelRecord]:
        try:
            with self._session_factory() as session:
                rows = session.query(Channel).order_by(Channel.name).all()
                return [_channel_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def delete_channel(self, key: str, value: Any) -> None:
        try:
            with self._session_factory() as session:
                row = self._channel_row(session, key, value)
                name = row.name
                session.delete(row)
                session.commit()
                LOGGER.info("Deleted channel %s", name)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def update_last_scan(self, channel_id: UUID, when: datetime | None = None) -> None:
        try:
            with self._session_factory() as session:
                row = self._channel_row(session, "id", channel_id)
                row.last_scan = when or self._clock()
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Settings blobs (read-modify-write)

    def update_settings(
        self,
        key: str,
        value: Any,
        mutate: Callable[[ChannelSettings], None],
        *,
        lock_token: ChannelLockToken,
    ) -> ChannelSettings:
        return self._update_blob(
            key,
            value,
            "settings",
            ChannelSettings.from_dict,
            mutate,
            lock_token,
        )

    def update_postprocess_args(
        self,
        key: str,
        value: Any,
        mutate: Callable[[PostProcessArgs], None],
        *,
        lock_token: ChannelLockToken,
    ) -> PostProcessArgs:
        return self._update_blob(
            key,
            value,
            "postprocess_args",
            PostProcessArgs.from_dict,
            mutate,
            lock_token,
        )

    def _update_blob(self, key, value, column, loader, mutate, lock_token):
        if lock_token is None or not lock_token.active:
            raise SettingsUpdateError("an active channel lock token is required to change settings")

        try:
            with self._session_factory() as session:
                row = self._channel_row(session, key, value)
                if row.id != lock_token.channel_id:
                    raise SettingsUpdateError(
                        f"lock token for channel {lock_token.channel_id} does not cover channel {row.name!r}"
                    )

                blob = loader(getattr(row, column))
                try:
                    mutate(blob)
                except Exception as exc:
                    raise SettingsUpdateError(
                        f"{column} update for channel {row.name!r} aborted: {exc}"
                    ) from exc
                try:
                    blob.validate()
                except ValidationError as exc:
                    raise SettingsUpdateError(
                        f"{column} update for channel {row.name!r} rejected: {exc}"
                    ) from exc

                setattr(row, column, blob.to_dict())
                session.commit()
                LOGGER.debug("Updated %s for channel %s", column, row.name)
                return blob
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Channel URLs

    def add_channel_url(
        self,
        channel_id: UUID,
        spec: str | ChannelURLSpec,
        *,
        is_manual: bool = False,
    ) -> ChannelURLRecord:
        if isinstance(spec, str):
            spec = ChannelURLSpec(url=spec)
        if not spec.url or not spec.url.strip():
            raise ValidationError("channel URL must not be empty")

        try:
            with self._session_factory() as session:
                channel = self._channel_row(session, "id", channel_id)
                target = normalize_url(spec.url)
                if any(normalize_url(item.url) == target for item in channel.urls):
                    raise ValidationError(f"channel {channel.name!r} already has URL {spec.url!r}")
                row = ChannelURL(
                    channel_id=channel.id,
                    url=spec.url.strip(),
                    username=spec.username,
                    password=spec.password,
                    login_url=spec.login_url,
                    is_manual=is_manual,
                )
                session.add(row)
                session.commit()
                return _url_record(row)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def ensure_manual_channel_url(self, channel_id: UUID) -> ChannelURLRecord:
        """Return the channel's manual-download URL row, creating it on first use."""

        try:
            with self._session_factory() as session:
                row = (
                    session.query(ChannelURL)
                    .filter(ChannelURL.channel_id == channel_id, ChannelURL.is_manual.is_(True))
                    .one_or_none()
                )
                if row is None:
                    self._channel_row(session, "id", channel_id)
                    row = ChannelURL(channel_id=channel_id, url=MANUAL_DOWNLOADS_URL, is_manual=True)
                    session.add(row)
                    session.commit()
                    LOGGER.debug("Created manual download URL for channel %s", channel_id)
                return _url_record(row)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def set_channel_url_auth(
        self,
        channel_id: UUID,
        url: str,
        *,
        username: str | None,
        password: str | None,
        login_url: str | None,
    ) -> ChannelURLRecord:
        if bool(username) != bool(login_url):
            raise ValidationError("username and login URL must be set together")
        try:
            with self._session_factory() as session:
                row = self._channel_url_row(session, channel_id, url)
                row.username = username or None
                row.password = password or None
                row.login_url = login_url or None
                session.commit()
                return _url_record(row)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def set_channel_url_paused(self, channel_id: UUID, url: str, paused: bool) -> ChannelURLRecord:
        try:
            with self._session_factory() as session:
                row = self._channel_url_row(session, channel_id, url)
                row.paused = paused
                session.commit()
                return _url_record(row)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def update_channel_url_last_scan(
        self,
        url_ids: Iterable[UUID],
        when: datetime | None = None,
    ) -> None:
        ids = list(url_ids)
        if not ids:
            return
        stamp = when or self._clock()
        try:
            with self._session_factory() as session:
                session.query(ChannelURL).filter(ChannelURL.id.in_(ids)).update(
                    {ChannelURL.last_scan: stamp}, synchronize_session=False
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Videos

    def known_video_urls(self, channel_id: UUID) -> list[str]:
        """Every recorded video URL of the channel, finished or not."""

        try:
            with self._session_factory() as session:
                rows = session.query(Video.url).filter(Video.channel_id == channel_id).all()
                return [row[0] for row in rows]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def add_videos(
        self,
        channel_id: UUID,
        videos: Iterable[NewVideo],
        *,
        ignored: bool = False,
    ) -> list[VideoRecord]:
        """Insert videos not yet recorded for the channel in one transaction.

        URLs already present (after normalization) are skipped silently.
        With ``ignored`` the rows are stored as finished so they are never
        fetched.
        """

        try:
            with self._session_factory() as session:
                seen = {
                    normalize_url(row[0])
                    for row in session.query(Video.url).filter(Video.channel_id == channel_id)
                }
                created: list[Video] = []
                for item in videos:
                    if not item.url or not item.url.strip():
                        continue
                    key = normalize_url(item.url)
                    if key in seen:
                        continue
                    seen.add(key)
                    row = Video(
                        channel_id=channel_id,
                        channel_url_id=item.channel_url_id,
                        url=item.url.strip(),
                        title=item.title,
                        finished=ignored,
                        ignored=ignored,
                        download_status=DownloadStatus.FINISHED if ignored else DownloadStatus.PENDING,
                        percentage=100.0 if ignored else 0.0,
                    )
                    session.add(row)
                    created.append(row)
                session.commit()
                return [_video_record(row) for row in created]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def update_video_status(
        self,
        video_id: UUID,
        status: DownloadStatus,
        *,
        percentage: float | None = None,
        error: str | None = None,
        title: str | None = None,
        metadata: dict | None = None,
    ) -> VideoRecord:
        try:
            with self._session_factory() as session:
                row = session.get(Video, video_id)
                if row is None:
                    raise StorePersistenceError(f"no video found with id {video_id}")
                row.download_status = status
                row.finished = status is DownloadStatus.FINISHED
                if percentage is not None:
                    row.percentage = percentage
                elif status is DownloadStatus.FINISHED:
                    row.percentage = 100.0
                row.error = error
                if title:
                    row.title = title
                if metadata is not None:
                    row.metadata_json = metadata
                session.commit()
                return _video_record(row)
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def unfinished_videos(self, channel_id: UUID) -> list[VideoRecord]:
        """Pending or failed videos, including ones left Downloading by a crash."""

        try:
            with self._session_factory() as session:
                rows = (
                    session.query(Video)
                    .filter(
                        Video.channel_id == channel_id,
                        Video.finished.is_(False),
                        Video.ignored.is_(False),
                    )
                    .order_by(Video.created_at, Video.id)
                    .all()
                )
                return [_video_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Notifications

    def add_notify_url(
        self,
        channel_id: UUID,
        name: str,
        notify_url: str,
        *,
        channel_url: str | None = None,
    ) -> NotificationRecord:
        """Register a URL to POST to after a pass that fetched videos.

        With ``channel_url`` the notification only fires when that channel URL
        produced new videos.
        """

        name = (name or "").strip()
        notify_url = (notify_url or "").strip()
        if not name:
            raise ValidationError("notification name is required")
        parts = urlsplit(notify_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValidationError(f"notification URL must be an http(s) URL (got {notify_url!r})")

        try:
            with self._session_factory() as session:
                channel = self._channel_row(session, "id", channel_id)
                if channel_url:
                    channel_url = self._channel_url_row(session, channel.id, channel_url).url
                row = Notification(
                    channel_id=channel.id,
                    name=name,
                    notify_url=notify_url,
                    channel_url=channel_url or None,
                )
                session.add(row)
                session.commit()
                LOGGER.info("Added notification %s for channel %s", name, channel.name)
                return _notification_record(row)
        except IntegrityError as exc:
            raise StorePersistenceError(f"channel {channel_id} already notifies {notify_url!r}") from exc
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def notify_urls(self, channel_id: UUID) -> list[NotificationRecord]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(Notification)
                    .filter(Notification.channel_id == channel_id)
                    .order_by(Notification.id)
                    .all()
                )
                return [_notification_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def delete_notify_url(self, channel_id: UUID, notify_url: str) -> int:
        try:
            with self._session_factory() as session:
                removed = (
                    session.query(Notification)
                    .filter(
                        Notification.channel_id == channel_id,
                        Notification.notify_url == notify_url.strip(),
                    )
                    .delete(synchronize_session=False)
                )
                session.commit()
                return removed
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Helpers

    def _channel_row(self, session: Session, key: str, value: Any) -> Channel:
        column = _SELECTOR_COLUMNS.get(key)
        if column is None:
            raise ValidationError(f"channels can only be selected by {sorted(_SELECTOR_COLUMNS)} (got {key!r})")
        if key == "id" and not isinstance(value, UUID):
            try:
                value = UUID(str(value))
            except ValueError as exc:
                raise ValidationError(f"invalid channel id {value!r}") from exc
        row = session.query(Channel).filter(column == value).one_or_none()
        if row is None:
            raise StorePersistenceError(f"no channel found with {key} {value!r}")
        return row

    def _channel_url_row(self, session: Session, channel_id: UUID, url: str) -> ChannelURL:
        target = normalize_url(url)
        rows = session.query(ChannelURL).filter(ChannelURL.channel_id == channel_id).all()
        for row in rows:
            if normalize_url(row.url) == target:
                return row
        raise StorePersistenceError(f"channel {channel_id} has no URL {url!r}")
