import unittest
from datetime import datetime

from vidcrawl.config import load_crawl_config
from vidcrawl.errors import ValidationError
from vidcrawl.settings import (
    DEFAULT_CRAWL_FREQ_MINUTES,
    BlockEntry,
    ChannelSettings,
    DownloadFilter,
    PostProcessArgs,
)


class ChannelSettingsTestCase(unittest.TestCase):
    def test_missing_keys_default_and_unknown_keys_are_ignored(self) -> None:
        settings = ChannelSettings.from_dict({"max_concurrency": 4, "legacy_field": "whatever"})

        self.assertEqual(settings.concurrency, 4)
        self.assertEqual(settings.crawl_freq, DEFAULT_CRAWL_FREQ_MINUTES)
        self.assertEqual(settings.bot_blocks, [])
        self.assertNotIn("legacy_field", settings.to_dict())

    def test_negative_crawl_frequency_falls_back_to_default(self) -> None:
        settings = ChannelSettings.from_dict({"crawl_freq": -5})

        self.assertEqual(settings.crawl_freq, DEFAULT_CRAWL_FREQ_MINUTES)

    def test_block_entries_survive_serialization(self) -> None:
        blocked_at = datetime(2024, 5, 1, 12, 30)
        settings = ChannelSettings(bot_blocks=[BlockEntry("x.com", "cookie", blocked_at)])

        payload = settings.to_dict()
        restored = ChannelSettings.from_dict(payload)

        self.assertTrue(payload["bot_blocked"])
        self.assertEqual(restored.bot_blocks, [BlockEntry("x.com", "cookie", blocked_at)])
        self.assertEqual(restored.blocked_hostnames, ["x.com"])

    def test_validate_rejects_out_of_range_concurrency(self) -> None:
        with self.assertRaises(ValidationError):
            ChannelSettings(concurrency=26).validate()
        with self.assertRaises(ValidationError):
            ChannelSettings(concurrency=0).validate()

    def test_validate_rejects_bad_filters_and_dates(self) -> None:
        with self.assertRaises(ValidationError):
            ChannelSettings(filters=[DownloadFilter(field="title", value="x", type="matches")]).validate()
        with self.assertRaises(ValidationError):
            ChannelSettings(from_date="2024-01-01").validate()

    def test_validate_rejects_unknown_block_context(self) -> None:
        with self.assertRaises(ValidationError):
            ChannelSettings(bot_blocks=[BlockEntry("x.com", "proxy", None)]).validate()


class PostProcessArgsTestCase(unittest.TestCase):
    def test_uses_metarr_keys(self) -> None:
        args = PostProcessArgs.from_dict({"metarr_ext": "mp4", "metarr_meta_ops": ["title:set:x"]})

        self.assertEqual(args.ext, "mp4")
        self.assertEqual(args.meta_ops, ["title:set:x"])
        self.assertEqual(args.to_dict()["metarr_ext"], "mp4")

    def test_replace_suffix_needs_pairs(self) -> None:
        with self.assertRaises(ValidationError):
            PostProcessArgs(filename_replace_suffix=["_1"]).validate()


class LoadCrawlConfigTestCase(unittest.TestCase):
    def test_reads_prefixed_environment(self) -> None:
        config = load_crawl_config(
            {
                "VIDCRAWL_DATABASE_URL": "sqlite://",
                "VIDCRAWL_DATA_DIR": "/tmp/vidcrawl",
                "VIDCRAWL_CONCURRENCY": "3",
                "VIDCRAWL_RETRY_DELAY": "1.5",
            }
        )

        self.assertEqual(config.db_url, "sqlite://")
        self.assertEqual(str(config.cookie_dir), "/tmp/vidcrawl/cookies")
        self.assertEqual(config.global_concurrency, 3)
        self.assertEqual(config.retry.base_delay, 1.5)

    def test_rejects_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            load_crawl_config({"VIDCRAWL_CONCURRENCY": "30"})
        with self.assertRaises(ValueError):
            load_crawl_config({"VIDCRAWL_FETCH_TIMEOUT": "soon"})


if __name__ == "__main__":
    unittest.main()
