"""Per-hostname bot-block ledger with cooldown-based unlocking.

Entries are stored in the channel settings blob under ``bot_blocks`` and
keyed by (eTLD+1, context). The context records how the blocked request was
made, so an unauthenticated block does not stop a logged-in crawl of the
same site.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional
from uuid import UUID

from .settings import BlockEntry, ChannelSettings, utcnow
from .store import ChannelLockToken, ChannelRecord, ChannelStore, ChannelURLRecord
from .urls import base_domain

LOGGER = logging.getLogger(__name__)


class BlockContext(str, enum.Enum):
    UNAUTH = "unauth"
    COOKIE = "cookie"
    AUTH = "auth"


# Minutes a hostname stays blocked before the next crawl may try it again.
DEFAULT_COOLDOWNS: dict[str, float] = {
    "youtube.com": 2880,
    "youtu.be": 2880,
    "twitch.tv": 1440,
    "instagram.com": 1440,
    "facebook.com": 1440,
    "twitter.com": 720,
    "x.com": 720,
    "tiktok.com": 720,
    "vimeo.com": 480,
    "soundcloud.com": 480,
    "reddit.com": 360,
    "dailymotion.com": 360,
    "bandcamp.com": 240,
    "rumble.com": 180,
    "imgur.com": 180,
}


def cooldown_for(hostname: str, table: Mapping[str, float] | None = None) -> float | None:
    """Cooldown in minutes for ``hostname``; ``None`` means manual unblock only."""

    table = DEFAULT_COOLDOWNS if table is None else table
    host = hostname.lower()
    if host in table:
        return table[host]
    for key, minutes in table.items():
        if host.endswith("." + key):
            return minutes
    return None


def block_context_for(channel_url: ChannelURLRecord, settings: ChannelSettings) -> BlockContext:
    if channel_url.login_url and channel_url.username:
        return BlockContext.AUTH
    if settings.cookie_source or settings.use_global_cookies:
        return BlockContext.COOKIE
    return BlockContext.UNAUTH


def is_blocked(settings: ChannelSettings, hostname: str, context: BlockContext | str) -> bool:
    host = base_domain(hostname)
    return settings.find_block(host, BlockContext(context).value) is not None


@dataclass(slots=True)
class UnlockReport:
    unlocked: bool
    released: list[BlockEntry] = field(default_factory=list)
    # Remaining wait per still-blocked "hostname (context)"; None means manual unblock only.
    remaining: dict[str, Optional[timedelta]] = field(default_factory=dict)


class BlockLedger:
    """Records bot blocks and releases them once their cooldown has passed."""

    def __init__(
        self,
        store: ChannelStore,
        *,
        cooldowns: Mapping[str, float] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cooldowns = dict(DEFAULT_COOLDOWNS if cooldowns is None else cooldowns)
        self._clock = clock

    def record_block(
        self,
        channel_id: UUID,
        hostname: str,
        context: BlockContext | str,
        *,
        lock_token: ChannelLockToken,
    ) -> ChannelSettings:
        host = base_domain(hostname)
        ctx = BlockContext(context).value
        now = self._clock()

        def mutate(settings: ChannelSettings) -> None:
            entry = settings.find_block(host, ctx)
            if entry is None:
                settings.bot_blocks.append(BlockEntry(hostname=host, context=ctx, blocked_at=now))
            else:
                entry.blocked_at = now

        settings = self._store.update_settings("id", channel_id, mutate, lock_token=lock_token)
        cooldown = cooldown_for(host, self._cooldowns)
        if cooldown is None:
            LOGGER.warning(
                "Channel %s blocked by %s (%s); no cooldown known, clear it manually with unblock",
                channel_id,
                host,
                ctx,
            )
        else:
            LOGGER.warning(
                "Channel %s blocked by %s (%s); retrying after %.0f minutes",
                channel_id,
                host,
                ctx,
                cooldown,
            )
        return settings

    def check_or_unlock(self, channel: ChannelRecord, *, lock_token: ChannelLockToken) -> UnlockReport:
        """Release entries whose cooldown elapsed; returns whether the channel is fully clear.

        ``channel.settings`` is refreshed in place when entries are released.
        """

        entries = list(channel.settings.bot_blocks)
        if not entries:
            return UnlockReport(unlocked=True)

        now = self._clock()
        released: list[BlockEntry] = []
        remaining: dict[str, Optional[timedelta]] = {}
        for entry in entries:
            label = f"{entry.hostname} ({entry.context})"
            if entry.blocked_at is None:
                released.append(entry)
                continue
            cooldown = cooldown_for(entry.hostname, self._cooldowns)
            if cooldown is None:
                remaining[label] = None
                LOGGER.info(
                    "Channel %s still blocked by %s; needs a manual unblock", channel.name, label
                )
                continue
            elapsed = now - entry.blocked_at
            limit = timedelta(minutes=cooldown)
            if elapsed >= limit:
                released.append(entry)
            else:
                remaining[label] = limit - elapsed
                LOGGER.info(
                    "Channel %s still blocked by %s for another %.1f minutes (blocked at %s)",
                    channel.name,
                    label,
                    (limit - elapsed).total_seconds() / 60,
                    entry.blocked_at.isoformat(),
                )

        if released:
            keys = {(entry.hostname, entry.context) for entry in released}

            def mutate(settings: ChannelSettings) -> None:
                settings.bot_blocks = [
                    entry for entry in settings.bot_blocks if (entry.hostname, entry.context) not in keys
                ]

            channel.settings = self._store.update_settings(
                "id", channel.id, mutate, lock_token=lock_token
            )
            for entry in released:
                LOGGER.info("Unblocked %s (%s) for channel %s", entry.hostname, entry.context, channel.name)

        return UnlockReport(unlocked=not remaining, released=released, remaining=remaining)

    def unblock(
        self,
        channel_id: UUID,
        *,
        lock_token: ChannelLockToken,
        hostname: str | None = None,
        context: BlockContext | str | None = None,
    ) -> int:
        """Clear matching entries regardless of cooldown; returns how many were removed."""

        host = base_domain(hostname) if hostname else None
        ctx = BlockContext(context).value if context else None
        removed: list[BlockEntry] = []

        def matches(entry: BlockEntry) -> bool:
            if host is not None and entry.hostname != host:
                return False
            if ctx is not None and entry.context != ctx:
                return False
            return True

        def mutate(settings: ChannelSettings) -> None:
            removed.extend(entry for entry in settings.bot_blocks if matches(entry))
            settings.bot_blocks = [entry for entry in settings.bot_blocks if not matches(entry)]

        self._store.update_settings("id", channel_id, mutate, lock_token=lock_token)
        if removed:
            LOGGER.info("Manually cleared %d bot block(s) for channel %s", len(removed), channel_id)
        return len(removed)
