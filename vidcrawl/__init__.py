"""Channel crawler that discovers new videos and hands them to yt-dlp."""

from .crawl import CrawlOrchestrator, CrawlResult
from .store import ChannelLocks, ChannelStore

__all__ = ["ChannelLocks", "ChannelStore", "CrawlOrchestrator", "CrawlResult"]
