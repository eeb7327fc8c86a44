"""Typed views over the JSON settings blobs stored on each channel row.

Blobs carry no version number. Unknown keys are ignored on read and missing
keys fall back to the dataclass defaults, so older rows keep loading after
fields are added.
"""

from __future__ import annotations

import logging
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Mapping

from .config import MAX_CONCURRENCY
from .errors import ValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_CRAWL_FREQ_MINUTES = 30
BLOCK_CONTEXTS = ("unauth", "cookie", "auth")
FILTER_TYPES = ("contains", "omits")
FILTER_MODES = ("must", "any")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` columns in ``models``."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            LOGGER.warning("Ignoring unparseable timestamp %r in settings blob", value)
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            return default
    if isinstance(default, str):
        return "" if value is None else str(value)
    if isinstance(default, list):
        if not isinstance(value, list):
            return list(default)
        return [str(item) for item in value]
    return value


def _default_for(item) -> Any:
    if item.default is not MISSING:
        return item.default
    if item.default_factory is not MISSING:  # type: ignore[misc]
        return item.default_factory()  # type: ignore[misc]
    return None


def _load_scalars(cls, payload: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for item in fields(cls):
        key = item.metadata.get("json")
        if key is None:
            continue
        if key in payload:
            values[item.name] = _coerce(payload[key], _default_for(item))
    return values


def _dump_scalars(instance) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for item in fields(instance):
        key = item.metadata.get("json")
        if key is None:
            continue
        value = getattr(instance, item.name)
        payload[key] = list(value) if isinstance(value, list) else value
    return payload


def _json(key: str, default: Any = MISSING, default_factory: Any = MISSING):
    if default_factory is not MISSING:
        return field(default_factory=default_factory, metadata={"json": key})
    return field(default=default, metadata={"json": key})


@dataclass(slots=True)
class DownloadFilter:
    field: str
    value: str
    type: str = "contains"
    must_any: str = "must"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DownloadFilter":
        return cls(
            field=str(payload.get("filter_field", "")),
            value=str(payload.get("filter_value", "")),
            type=str(payload.get("filter_type", "contains") or "contains"),
            must_any=str(payload.get("filter_must_any", "must") or "must"),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "filter_field": self.field,
            "filter_type": self.type,
            "filter_value": self.value,
            "filter_must_any": self.must_any,
        }


@dataclass(slots=True)
class BlockEntry:
    hostname: str
    context: str
    blocked_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BlockEntry":
        return cls(
            hostname=str(payload.get("hostname", "")).lower(),
            context=str(payload.get("context", "unauth") or "unauth"),
            blocked_at=parse_timestamp(payload.get("blocked_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "context": self.context,
            "blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
        }


@dataclass(slots=True)
class ChannelSettings:
    concurrency: int = _json("max_concurrency", 1)
    crawl_freq: int = _json("crawl_freq", DEFAULT_CRAWL_FREQ_MINUTES)
    retries: int = _json("download_retries", 0)
    cookie_source: str = _json("cookie_source", "")
    use_global_cookies: bool = _json("use_global_cookies", False)
    require_cookies: bool = _json("require_cookies", False)
    paused: bool = _json("paused", False)
    auto_download: bool = _json("auto_download", True)
    filter_file: str = _json("filter_file", "")
    move_op_file: str = _json("move_op_file", "")
    from_date: str = _json("from_date", "")
    to_date: str = _json("to_date", "")
    max_filesize: str = _json("max_filesize", "")
    external_downloader: str = _json("external_downloader", "")
    external_downloader_args: str = _json("external_downloader_args", "")
    extra_ytdlp_video_args: str = _json("extra_ytdlp_video_args", "")
    ytdlp_output_ext: str = _json("ytdlp_output_ext", "")
    video_dir: str = _json("video_directory", "")
    json_dir: str = _json("json_directory", "")
    filters: list[DownloadFilter] = field(default_factory=list)
    bot_blocks: list[BlockEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ChannelSettings":
        payload = payload or {}
        settings = cls(**_load_scalars(cls, payload))
        if settings.crawl_freq < 0:
            settings.crawl_freq = DEFAULT_CRAWL_FREQ_MINUTES
        settings.filters = [
            DownloadFilter.from_dict(item)
            for item in payload.get("filters") or []
            if isinstance(item, Mapping)
        ]
        settings.bot_blocks = [
            BlockEntry.from_dict(item)
            for item in payload.get("bot_blocks") or []
            if isinstance(item, Mapping)
        ]
        return settings

    def to_dict(self) -> dict[str, Any]:
        payload = _dump_scalars(self)
        payload["filters"] = [item.to_dict() for item in self.filters]
        payload["bot_blocks"] = [entry.to_dict() for entry in self.bot_blocks]
        # Derived, for readers that only look at the flag; ignored on load.
        payload["bot_blocked"] = self.bot_blocked
        return payload

    @property
    def bot_blocked(self) -> bool:
        return bool(self.bot_blocks)

    @property
    def blocked_hostnames(self) -> list[str]:
        return sorted({entry.hostname for entry in self.bot_blocks})

    def find_block(self, hostname: str, context: str) -> BlockEntry | None:
        for entry in self.bot_blocks:
            if entry.hostname == hostname and entry.context == context:
                return entry
        return None

    def validate(self) -> None:
        if not 1 <= self.concurrency <= MAX_CONCURRENCY:
            raise ValidationError(
                f"max_concurrency must be between 1 and {MAX_CONCURRENCY} (got {self.concurrency})"
            )
        if self.retries < 0:
            raise ValidationError(f"download_retries must not be negative (got {self.retries})")
        if self.crawl_freq < 0:
            raise ValidationError(f"crawl_freq must not be negative (got {self.crawl_freq})")
        for date_field in ("from_date", "to_date"):
            value = getattr(self, date_field)
            if value and not (len(value) == 8 and value.isdigit()):
                raise ValidationError(f"{date_field} must be formatted YYYYMMDD (got {value!r})")
        for item in self.filters:
            if not item.field:
                raise ValidationError("download filter is missing a field name")
            if item.type not in FILTER_TYPES:
                raise ValidationError(f"download filter type must be one of {FILTER_TYPES} (got {item.type!r})")
            if item.must_any not in FILTER_MODES:
                raise ValidationError(
                    f"download filter mode must be one of {FILTER_MODES} (got {item.must_any!r})"
                )
        seen: set[tuple[str, str]] = set()
        for entry in self.bot_blocks:
            if not entry.hostname:
                raise ValidationError("bot block entry is missing a hostname")
            if entry.context not in BLOCK_CONTEXTS:
                raise ValidationError(
                    f"bot block context must be one of {BLOCK_CONTEXTS} (got {entry.context!r})"
                )
            key = (entry.hostname, entry.context)
            if key in seen:
                raise ValidationError(f"duplicate bot block entry for {entry.hostname} ({entry.context})")
            seen.add(key)


@dataclass(slots=True)
class PostProcessArgs:
    """Arguments forwarded to the metadata/transcode post-processor."""

    ext: str = _json("metarr_ext", "")
    filename_replace_suffix: list[str] = _json("metarr_filename_replace_suffix", default_factory=list)
    rename_style: str = _json("metarr_rename_style", "")
    filename_date_prefix: str = _json("metarr_filename_date_prefix", "")
    meta_ops: list[str] = _json("metarr_meta_ops", default_factory=list)
    meta_overwrite: bool = _json("metarr_meta_overwrite", False)
    meta_preserve: bool = _json("metarr_meta_preserve", False)
    output_dir: str = _json("metarr_output_directory", "")
    concurrency: int = _json("metarr_concurrency", 1)
    max_cpu: float = _json("metarr_max_cpu_usage", 100.0)
    min_free_mem: str = _json("metarr_min_free_mem", "")
    use_gpu: str = _json("metarr_gpu", "")
    gpu_dir: str = _json("metarr_gpu_directory", "")
    transcode_video_filter: str = _json("metarr_transcode_video_filter", "")
    transcode_codec: str = _json("metarr_transcode_codec", "")
    transcode_audio_codec: str = _json("metarr_transcode_audio_codec", "")
    transcode_quality: str = _json("metarr_transcode_quality", "")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "PostProcessArgs":
        return cls(**_load_scalars(cls, payload or {}))

    def to_dict(self) -> dict[str, Any]:
        return _dump_scalars(self)

    def validate(self) -> None:
        if not 1 <= self.concurrency <= MAX_CONCURRENCY:
            raise ValidationError(
                f"metarr_concurrency must be between 1 and {MAX_CONCURRENCY} (got {self.concurrency})"
            )
        if not 0 < self.max_cpu <= 100:
            raise ValidationError(f"metarr_max_cpu_usage must be in (0, 100] (got {self.max_cpu})")
        if len(self.filename_replace_suffix) % 2:
            raise ValidationError("metarr_filename_replace_suffix needs find/replace pairs")
