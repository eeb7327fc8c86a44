import threading
import unittest
from datetime import datetime, timedelta

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, DownloadStatus, Video
from vidcrawl.blocking import BlockLedger
from vidcrawl.config import RetryConfig
from vidcrawl.cookies import CookieResolutionError, ResolvedCookies
from vidcrawl.crawl import CrawlOrchestrator
from vidcrawl.errors import BotBlockedError, FatalFetchError, TransientFetchError, ValidationError
from vidcrawl.fetcher import FetchResult
from vidcrawl.notify import Notifier
from vidcrawl.settings import ChannelSettings
from vidcrawl.store import ChannelLocks, ChannelStore, DuplicateVideoError, NewVideo


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeScraper:
    def __init__(self, pages) -> None:
        self.pages = pages
        self.calls = []

    def list_video_urls(self, page_url, cookies, *, cookie_file=None):
        self.calls.append(page_url)
        listing = self.pages[page_url]
        if isinstance(listing, Exception):
            raise listing
        return list(listing)


class FakeFetcher:
    """Replays scripted outcomes per video URL; anything unscripted succeeds."""

    def __init__(self, script=None) -> None:
        self.script = {url: list(outcomes) for url, outcomes in (script or {}).items()}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, video_url, cookie_file, options):
        with self._lock:
            self.calls.append(video_url)
            queue = self.script.get(video_url) or []
            outcome = queue.pop(0) if queue else None
        if isinstance(outcome, Exception):
            raise outcome
        return FetchResult(url=video_url, title=f"title of {video_url}", file_path=f"/videos/{len(self.calls)}.mp4")


class FakeResolver:
    def __init__(self, error=None) -> None:
        self.error = error

    def resolve(self, channel, channel_url):
        if self.error is not None:
            raise self.error
        return ResolvedCookies()


class GatedFetcher:
    """Holds the first fetch until a second one is in flight, recording the peak."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.peak = 0
        self.overlapped = threading.Event()
        self._lock = threading.Lock()

    def fetch(self, video_url, cookie_file, options):
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            if self.in_flight >= 2:
                self.overlapped.set()
        try:
            self.overlapped.wait(timeout=5.0)
            return FetchResult(url=video_url, title=video_url, file_path=None)
        finally:
            with self._lock:
                self.in_flight -= 1


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine)
        self.clock = FakeClock(datetime(2024, 3, 1, 8, 0, 0))
        self.store = ChannelStore(self.session_factory, clock=self.clock)
        self.sleeps = []

    def tearDown(self) -> None:
        self.engine.dispose()

    def _orchestrator(self, scraper, fetcher, resolver=None, notifier=None) -> CrawlOrchestrator:
        return CrawlOrchestrator(
            self.store,
            scraper,
            fetcher,
            resolver or FakeResolver(),
            ledger=BlockLedger(self.store, clock=self.clock),
            locks=ChannelLocks(),
            retry=RetryConfig(base_delay=5.0),
            sleep=self.sleeps.append,
            notifier=notifier,
        )

    def _statuses(self, channel_id) -> dict[str, DownloadStatus]:
        with self.session_factory() as session:
            rows = session.query(Video).filter(Video.channel_id == channel_id).all()
            return {row.url: row.download_status for row in rows}

    def test_only_unknown_videos_are_returned(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        self.store.add_videos(channel.id, [NewVideo(url="https://site.com/a")], ignored=True)
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a", "https://site.com/b"]})
        fetcher = FakeFetcher()

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel)

        self.assertEqual([video.url for video in result.new_videos], ["https://site.com/b"])
        self.assertEqual(fetcher.calls, ["https://site.com/b"])
        self.assertEqual(self._statuses(channel.id)["https://site.com/b"], DownloadStatus.FINISHED)
        self.assertFalse(result.failed)
        self.assertEqual(self.store.get_channel("id", channel.id).last_scan, self.clock.now)

    def test_second_crawl_finds_nothing_new(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a", "http://site.com/b/"]})
        orchestrator = self._orchestrator(scraper, FakeFetcher())

        first = orchestrator.crawl_channel(channel)
        second = orchestrator.crawl_channel(self.store.get_channel("id", channel.id))

        self.assertEqual(len(first.new_videos), 2)
        self.assertEqual(second.new_videos, [])
        self.assertEqual(len(self._statuses(channel.id)), 2)

    def test_bot_block_abandons_the_host_and_other_hosts_continue(self) -> None:
        channel = self.store.add_channel(
            "Demo",
            ["https://www.youtube.com/@demo", "https://vimeo.com/demo"],
            settings=ChannelSettings(concurrency=1),
        )
        yt = [f"https://www.youtube.com/watch?v={key}" for key in "abc"]
        vimeo = ["https://vimeo.com/1", "https://vimeo.com/2"]
        scraper = FakeScraper({"https://www.youtube.com/@demo": yt, "https://vimeo.com/demo": vimeo})
        fetcher = FakeFetcher({yt[0]: [BotBlockedError("youtube.com", url=yt[0])]})

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel)

        self.assertEqual([call for call in fetcher.calls if "youtube" in call], [yt[0]])
        self.assertCountEqual([video.url for video in result.downloaded], vimeo)
        self.assertCountEqual(result.abandoned, yt)
        self.assertEqual(result.blocked_hostnames, {"youtube.com"})
        self.assertFalse(result.failed)

        statuses = self._statuses(channel.id)
        for url in yt:
            self.assertEqual(statuses[url], DownloadStatus.PENDING)
        settings = self.store.get_channel("id", channel.id).settings
        self.assertEqual(settings.blocked_hostnames, ["youtube.com"])
        self.assertEqual(settings.bot_blocks[0].context, "unauth")

    def test_blocked_url_is_skipped_on_the_next_crawl(self) -> None:
        channel = self.store.add_channel("Demo", ["https://www.youtube.com/@demo", "https://vimeo.com/demo"])
        scraper = FakeScraper(
            {
                "https://www.youtube.com/@demo": BotBlockedError("youtube.com", url="https://www.youtube.com/@demo"),
                "https://vimeo.com/demo": [],
            }
        )
        orchestrator = self._orchestrator(scraper, FakeFetcher())

        first = orchestrator.crawl_channel(channel)
        self.clock.now += timedelta(minutes=60)
        second = orchestrator.crawl_channel(self.store.get_channel("id", channel.id))

        self.assertEqual(first.blocked_hostnames, {"youtube.com"})
        self.assertEqual(second.blocked_hostnames, {"youtube.com"})
        self.assertEqual(scraper.calls.count("https://www.youtube.com/@demo"), 1)
        self.assertEqual(scraper.calls.count("https://vimeo.com/demo"), 2)

    def test_transient_failures_back_off_linearly(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"], settings=ChannelSettings(retries=2))
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"]})
        fetcher = FakeFetcher(
            {
                "https://site.com/a": [
                    TransientFetchError("reset", url="https://site.com/a"),
                    TransientFetchError("reset", url="https://site.com/a"),
                ]
            }
        )

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel)

        self.assertEqual(self.sleeps, [5.0, 10.0])
        self.assertEqual(len(fetcher.calls), 3)
        self.assertEqual([video.url for video in result.downloaded], ["https://site.com/a"])

    def test_fatal_failure_is_not_retried(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"], settings=ChannelSettings(retries=3))
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"]})
        fetcher = FakeFetcher({"https://site.com/a": [FatalFetchError("gone", url="https://site.com/a")]})

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel)

        self.assertEqual(fetcher.calls, ["https://site.com/a"])
        self.assertEqual(self.sleeps, [])
        self.assertTrue(result.failed)
        self.assertEqual(self._statuses(channel.id)["https://site.com/a"], DownloadStatus.FAILED)

    def test_ignore_crawl_marks_everything_finished(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a", "https://site.com/b"]})
        fetcher = FakeFetcher()
        orchestrator = self._orchestrator(scraper, fetcher)

        ignored = orchestrator.crawl_channel_ignore(channel)
        later = orchestrator.crawl_channel(self.store.get_channel("id", channel.id))

        self.assertEqual(len(ignored.new_videos), 2)
        self.assertEqual(later.new_videos, [])
        self.assertEqual(fetcher.calls, [])
        self.assertEqual(set(self._statuses(channel.id).values()), {DownloadStatus.FINISHED})

    def test_pending_videos_are_resumed(self) -> None:
        channel = self.store.add_channel(
            "Demo", ["https://site.com/videos"], settings=ChannelSettings(auto_download=False)
        )
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"]})
        fetcher = FakeFetcher()
        orchestrator = self._orchestrator(scraper, fetcher)

        crawled = orchestrator.crawl_channel(channel)
        self.assertEqual(fetcher.calls, [])
        self.assertEqual(len(crawled.new_videos), 1)

        resumed = orchestrator.resume_unfinished(self.store.get_channel("id", channel.id))

        self.assertEqual(fetcher.calls, ["https://site.com/a"])
        self.assertEqual(len(resumed.downloaded), 1)
        self.assertEqual(self.store.unfinished_videos(channel.id), [])

    def test_cancelled_crawl_leaves_videos_pending(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a", "https://site.com/b"]})
        fetcher = FakeFetcher()
        cancel = threading.Event()
        cancel.set()

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel, cancel=cancel)

        self.assertTrue(result.cancelled)
        self.assertEqual(fetcher.calls, [])
        self.assertCountEqual(result.abandoned, ["https://site.com/a", "https://site.com/b"])
        self.assertEqual(len(self.store.unfinished_videos(channel.id)), 2)

    def test_missing_required_cookies_fail_the_url(self) -> None:
        channel = self.store.add_channel(
            "Demo",
            ["https://site.com/videos"],
            settings=ChannelSettings(use_global_cookies=True, require_cookies=True),
        )
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"]})
        resolver = FakeResolver(CookieResolutionError("no cookies"))

        result = self._orchestrator(scraper, FakeFetcher(), resolver).crawl_channel(channel)

        self.assertTrue(result.failed)
        self.assertEqual(scraper.calls, [])

    def test_unavailable_optional_cookies_fall_back_to_anonymous(self) -> None:
        channel = self.store.add_channel(
            "Demo",
            ["https://site.com/videos"],
            settings=ChannelSettings(use_global_cookies=True, require_cookies=False),
        )
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"]})
        fetcher = FakeFetcher()
        resolver = FakeResolver(CookieResolutionError("browser profile locked"))

        result = self._orchestrator(scraper, fetcher, resolver).crawl_channel(channel)

        self.assertFalse(result.failed)
        self.assertEqual(scraper.calls, ["https://site.com/videos"])
        self.assertEqual(fetcher.calls, ["https://site.com/a"])
        self.assertEqual(self._statuses(channel.id)["https://site.com/a"], DownloadStatus.FINISHED)

    def test_channel_concurrency_bounds_fetches_in_flight(self) -> None:
        channel = self.store.add_channel(
            "Demo",
            ["https://site.com/videos"],
            settings=ChannelSettings(concurrency=2),
        )
        urls = [f"https://site.com/v/{index}" for index in range(5)]
        scraper = FakeScraper({"https://site.com/videos": urls})
        fetcher = GatedFetcher()

        result = self._orchestrator(scraper, fetcher).crawl_channel(channel)

        self.assertEqual(len(result.downloaded), 5)
        self.assertEqual(fetcher.peak, 2)

    def test_notifications_follow_a_pass_that_fetched_videos(self) -> None:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(str(request.url))
            return httpx.Response(500 if "broken" in request.url.path else 204)

        channel = self.store.add_channel("Demo", ["https://site.com/videos", "https://site.com/shorts"])
        self.store.add_notify_url(channel.id, "jellyfin", "http://media.local/refresh")
        self.store.add_notify_url(channel.id, "videos", "http://media.local/broken", channel_url="https://site.com/videos")
        self.store.add_notify_url(channel.id, "shorts", "http://media.local/shorts", channel_url="https://site.com/shorts")
        scraper = FakeScraper({"https://site.com/videos": ["https://site.com/a"], "https://site.com/shorts": []})
        notifier = Notifier(transport=httpx.MockTransport(handler))
        orchestrator = self._orchestrator(scraper, FakeFetcher(), notifier=notifier)

        first = orchestrator.crawl_channel(channel)

        self.assertCountEqual(requests, ["http://media.local/refresh", "http://media.local/broken"])
        self.assertEqual([failure.url for failure in first.failures], ["http://media.local/broken"])

        requests.clear()
        orchestrator.crawl_channel(self.store.get_channel("id", channel.id))
        self.assertEqual(requests, [])

    def test_paused_channel_url_is_not_crawled(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos", "https://site.com/shorts"])
        self.store.set_channel_url_paused(channel.id, "https://site.com/shorts", True)
        scraper = FakeScraper({"https://site.com/videos": [], "https://site.com/shorts": []})

        self._orchestrator(scraper, FakeFetcher()).crawl_channel(self.store.get_channel("id", channel.id))

        self.assertEqual(scraper.calls, ["https://site.com/videos"])

    def test_manual_urls_are_fetched_under_the_manual_entry(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        fetcher = FakeFetcher()

        result = self._orchestrator(FakeScraper({}), fetcher).download_urls(channel, ["https://other.com/v/1 "])

        self.assertEqual(fetcher.calls, ["https://other.com/v/1"])
        self.assertEqual(len(result.downloaded), 1)
        reloaded = self.store.get_channel("id", channel.id)
        self.assertEqual(sum(1 for item in reloaded.urls if item.is_manual), 1)
        self.assertEqual(reloaded.crawl_urls[0].url, "https://site.com/videos")

    def test_known_url_is_rejected(self) -> None:
        channel = self.store.add_channel("Demo", ["https://site.com/videos"])
        self.store.add_videos(channel.id, [NewVideo(url="https://site.com/a")])
        orchestrator = self._orchestrator(FakeScraper({}), FakeFetcher())

        with self.assertRaises(DuplicateVideoError):
            orchestrator.download_urls(channel, ["http://site.com/a/"])
        with self.assertRaises(ValidationError):
            orchestrator.download_urls(channel, ["  "])


if __name__ == "__main__":
    unittest.main()
