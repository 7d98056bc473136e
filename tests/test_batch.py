import tempfile
import unittest
from datetime import datetime, UTC
from pathlib import Path

import httpx

from heatscrape.backoff import BackoffManager
from heatscrape.batch import run_sweep
from heatscrape.clock import FixedClock
from heatscrape.fetcher import PriceFetcher
from heatscrape.models import ErrorKind, ExtractionRule, RunSummary, ScrapeOutcome, SourceStatus

RULES = {
    "alpha-oil.com": ExtractionRule(),
    "bravo-fuel.com": ExtractionRule(),
    "charlie-heat.com": ExtractionRule(),
    "disabled-oil.com": ExtractionRule(enabled=False),
}


class FakeFetcher:
    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)

    async def fetch_with_retry(self, source, rule, max_retries=2, retry_delay=3.0):
        self.calls.append(source.name)
        if source.name in self.failing:
            outcome = ScrapeOutcome.failed(source, ErrorKind.TIMEOUT, "Timeout")
            outcome.retried_attempts = max_retries
            return outcome
        scraped_at = datetime(2026, 3, 10, 11, 0, tzinfo=UTC)
        return ScrapeOutcome.succeeded(source, 3.29, rule, f"https://{source.website}", scraped_at)


class TestRunSummary(unittest.TestCase):
    def test_alert_requires_more_than_twenty_percent(self):
        self.assertFalse(RunSummary(success=4, failed=1).alert)
        self.assertTrue(RunSummary(success=3, failed=2).alert)
        self.assertFalse(RunSummary().alert)

    def test_skipped_suppliers_do_not_count_as_attempts(self):
        summary = RunSummary(success=1, failed=0, skipped_unconfigured=10, skipped_backoff=5)
        self.assertEqual(summary.attempted, 1)
        self.assertEqual(summary.failure_rate, 0.0)
        self.assertEqual(summary.to_dict()["skipped"], 15)


class TestRunSweep(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        from heatscrape.db import SupplierDatabase

        self._tmp = tempfile.TemporaryDirectory()
        self.db = SupplierDatabase(db_path=Path(self._tmp.name) / "test.db")
        self.db.add_source("Alpha Oil", "alpha-oil.com", source_id="alpha")
        self.db.add_source("Bravo Fuel", "bravo-fuel.com", source_id="bravo")
        self.db.add_source("Charlie Heat", "charlie-heat.com", source_id="charlie")
        self.db.add_source("Delta Propane", "delta-propane.com", source_id="delta")
        self.db.add_source("Disabled Oil", "disabled-oil.com", source_id="disabled")
        self.db.update_source_backoff("charlie", status=SourceStatus.PHONE_ONLY)

        self.clock = FixedClock(datetime(2026, 3, 10, 11, 0, tzinfo=UTC))
        self.backoff = BackoffManager(self.db, clock=self.clock)
        self.sleeps = []

    def tearDown(self):
        self._tmp.cleanup()

    async def fake_sleep(self, seconds):
        self.sleeps.append(seconds)

    async def sweep(self, fetcher, **kwargs):
        return await run_sweep(
            self.db, fetcher, self.backoff, RULES, sleep=self.fake_sleep, **kwargs
        )

    async def test_sweep_summary_and_persistence(self):
        fetcher = FakeFetcher(failing={"Bravo Fuel"})
        with self.assertLogs("heatscrape.batch", level="WARNING") as logs:
            summary = await self.sweep(fetcher)

        self.assertEqual(fetcher.calls, ["Alpha Oil", "Bravo Fuel"])
        self.assertEqual(summary.success, 1)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.skipped_backoff, 1)
        self.assertEqual(summary.skipped_unconfigured, 2)
        self.assertTrue(summary.alert)
        self.assertTrue(any("ALERT" in line for line in logs.output))
        self.assertEqual(
            summary.failures,
            [
                {
                    "source_name": "Bravo Fuel",
                    "error": "Timeout",
                    "error_kind": "timeout",
                    "retried_attempts": 2,
                }
            ],
        )

        self.assertEqual(len(self.db.get_price_history("alpha")), 1)
        self.assertEqual(self.db.get_source("bravo").consecutive_failures, 1)
        runs = self.db.get_scrape_runs()
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["skipped_count"], 3)

    async def test_broken_supplier_does_not_abort_sweep(self):
        def handler(request):
            if request.url.host == "alpha-oil.com":
                return httpx.Response(302, headers={"location": str(request.url)})
            return httpx.Response(200, text="<p>Today: $3.49</p>")

        fetcher = PriceFetcher(clock=self.clock, transport=httpx.MockTransport(handler))
        summary = await self.sweep(fetcher)

        self.assertEqual(summary.success, 1)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.failures[0]["source_name"], "Alpha Oil")
        self.assertEqual(summary.failures[0]["retried_attempts"], 0)
        self.assertEqual(self.db.get_source("alpha").consecutive_failures, 1)
        self.assertEqual(len(self.db.get_price_history("bravo")), 1)
        self.assertEqual(len(self.db.get_scrape_runs()), 1)

    async def test_delay_between_configured_suppliers(self):
        await self.sweep(FakeFetcher(), delay=2.0)
        # Alpha, Bravo, then Charlie is skipped by backoff at the end
        self.assertEqual(self.sleeps, [2.0, 2.0])

    async def test_dry_run_saves_nothing(self):
        await self.sweep(FakeFetcher(failing={"Bravo Fuel"}), dry_run=True)

        self.assertEqual(self.db.get_price_history("alpha"), [])
        self.assertEqual(self.db.get_source("bravo").consecutive_failures, 0)
        self.assertEqual(self.db.get_scrape_runs(), [])

    async def test_name_filter(self):
        fetcher = FakeFetcher()
        summary = await self.sweep(fetcher, name_filter="alpha")

        self.assertEqual(fetcher.calls, ["Alpha Oil"])
        self.assertEqual(summary.success, 1)
        self.assertEqual(self.sleeps, [])

    async def test_no_configured_suppliers(self):
        fetcher = FakeFetcher()
        summary = await run_sweep(self.db, fetcher, self.backoff, {}, sleep=self.fake_sleep)

        self.assertEqual(fetcher.calls, [])
        self.assertEqual(summary.skipped_unconfigured, 5)
        self.assertFalse(summary.alert)


if __name__ == "__main__":
    unittest.main()
