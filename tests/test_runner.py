import logging
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, ProgramLock
from vidcrawl.crawl import CrawlResult, UrlFailure
from vidcrawl.errors import CrawlError
from vidcrawl.runner import (
    LOG_FILE_NAME,
    attach_file_logging,
    build_arg_parser,
    check_channels,
    detach_file_logging,
    main,
)
from vidcrawl.settings import ChannelSettings, utcnow
from vidcrawl.store import ChannelStore


class FakeOrchestrator:
    def __init__(self, failures=None, errors=None) -> None:
        self.failures = failures or {}
        self.errors = errors or {}
        self.calls = []

    def _result(self, kind, channel):
        self.calls.append((kind, channel.name))
        if channel.name in self.errors:
            raise self.errors[channel.name]
        result = CrawlResult(channel.name)
        result.failures.extend(self.failures.get(channel.name, []))
        return result

    def crawl_channel(self, channel, *, cancel=None):
        return self._result("crawl", channel)

    def crawl_channel_ignore(self, channel):
        return self._result("ignore", channel)

    def resume_unfinished(self, channel, *, cancel=None):
        return self._result("resume", channel)


class CheckChannelsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.now = datetime(2024, 3, 1, 12, 0, 0)
        self.store = ChannelStore(sessionmaker(bind=self.engine), clock=lambda: self.now)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_only_due_channels_are_crawled(self) -> None:
        fresh = self.store.add_channel("Fresh", ["https://site.com/fresh"], settings=ChannelSettings(crawl_freq=30))
        stale = self.store.add_channel("Stale", ["https://site.com/stale"], settings=ChannelSettings(crawl_freq=30))
        self.store.add_channel("New", ["https://site.com/new"])
        self.store.update_last_scan(fresh.id, self.now - timedelta(minutes=10))
        self.store.update_last_scan(stale.id, self.now - timedelta(minutes=45))
        orchestrator = FakeOrchestrator()

        summary = check_channels(self.store, orchestrator, now=self.now)

        self.assertCountEqual(summary.crawled, ["Stale", "New"])
        self.assertEqual(summary.skipped, ["Fresh"])
        self.assertTrue(summary.ok)

    def test_ignore_run_skips_the_frequency_gate(self) -> None:
        channel = self.store.add_channel("Fresh", ["https://site.com/fresh"])
        self.store.update_last_scan(channel.id, self.now)
        orchestrator = FakeOrchestrator()

        summary = check_channels(self.store, orchestrator, ignore=True, now=self.now)

        self.assertEqual(summary.crawled, ["Fresh"])
        self.assertEqual(orchestrator.calls, [("ignore", "Fresh")])

    def test_paused_and_missing_channels(self) -> None:
        self.store.add_channel("Paused", ["https://site.com/p"], settings=ChannelSettings(paused=True))
        orchestrator = FakeOrchestrator()

        summary = check_channels(self.store, orchestrator, names=["Paused", "Ghost"], now=self.now)

        self.assertEqual(summary.skipped, ["Paused"])
        self.assertEqual(summary.failed, {"Ghost": "channel not found"})
        self.assertEqual(orchestrator.calls, [])

    def test_one_failing_channel_does_not_stop_the_others(self) -> None:
        for name in ("Alpha", "Beta", "Gamma"):
            self.store.add_channel(name, [f"https://site.com/{name.lower()}"])
        orchestrator = FakeOrchestrator(
            failures={
                "Beta": [UrlFailure("https://site.com/b/1", "gone")],
                "Gamma": [UrlFailure("https://site.com/g/1", "blocked", blocked=True)],
            },
            errors={"Alpha": CrawlError("database went away")},
        )

        summary = check_channels(self.store, orchestrator, resume=True, max_workers=3, now=self.now)

        self.assertEqual(set(summary.failed), {"Alpha", "Beta"})
        self.assertCountEqual(summary.crawled, ["Beta", "Gamma"])
        self.assertIn(("resume", "Gamma"), orchestrator.calls)
        self.assertIn(("crawl", "Gamma"), orchestrator.calls)


class MainTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        self.db_url = f"sqlite:///{self.data_dir / 'vidcrawl.db'}"

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_download_needs_a_single_channel(self) -> None:
        parser = build_arg_parser()
        args = parser.parse_args(["--download", "https://site.com/v/1", "--channel", "Demo"])
        self.assertEqual(args.download, ["https://site.com/v/1"])

        with self.assertRaises(SystemExit):
            main(["--db-url", self.db_url, "--data-dir", str(self.data_dir), "--download", "https://site.com/v/1"])

    def test_empty_database_run_releases_the_lock(self) -> None:
        code = main(["--db-url", self.db_url, "--data-dir", str(self.data_dir)])

        self.assertEqual(code, 0)
        engine = create_engine(self.db_url)
        try:
            with sessionmaker(bind=engine)() as session:
                self.assertFalse(session.get(ProgramLock, 1).running)
        finally:
            engine.dispose()

    def test_live_lock_holder_blocks_the_run(self) -> None:
        engine = create_engine(self.db_url)
        Base.metadata.create_all(engine)
        with sessionmaker(bind=engine)() as session:
            session.add(ProgramLock(id=1, running=True, pid=4242, host="other-host", started_at=utcnow(), heartbeat=utcnow()))
            session.commit()
        engine.dispose()

        self.assertEqual(main(["--db-url", self.db_url, "--data-dir", str(self.data_dir)]), 2)

    def test_run_log_is_written_under_the_log_dir(self) -> None:
        engine = create_engine(self.db_url)
        Base.metadata.create_all(engine)
        with sessionmaker(bind=engine)() as session:
            session.add(ProgramLock(id=1, running=True, pid=4242, host="other-host", started_at=utcnow(), heartbeat=utcnow()))
            session.commit()
        engine.dispose()

        main(["--db-url", self.db_url, "--data-dir", str(self.data_dir)])

        log_text = (self.data_dir / "logs" / LOG_FILE_NAME).read_text(encoding="utf-8")
        self.assertIn("vidcrawl is already running (pid 4242 on other-host", log_text)
        self.assertFalse(
            any(getattr(handler, "baseFilename", "").endswith(LOG_FILE_NAME) for handler in logging.getLogger().handlers)
        )


class FileLoggingTestCase(unittest.TestCase):
    def test_attach_is_idempotent_and_detach_closes(self) -> None:
        with TemporaryDirectory() as tmp:
            log_dir = Path(tmp) / "logs"
            handler = attach_file_logging(log_dir)
            try:
                self.assertIsNotNone(handler)
                self.assertIsNone(attach_file_logging(log_dir))
                logging.getLogger("vidcrawl.test").warning("disk almost full")
                handler.flush()
                self.assertIn("[WARNING] vidcrawl.test: disk almost full", (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8"))
            finally:
                detach_file_logging(handler)
            self.assertNotIn(handler, logging.getLogger().handlers)


if __name__ == "__main__":
    unittest.main()
