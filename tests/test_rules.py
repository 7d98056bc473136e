import json
import tempfile
import unittest
from pathlib import Path

from heatscrape.models import DEFAULT_MIN_GALLONS, ExtractionPattern, ExtractionRule
from heatscrape.rules import (
    ScrapeConfigError,
    domain_for_website,
    domain_to_name,
    get_rule_for_source,
    load_scrape_config,
    normalize_domain,
    sync_sources_from_config,
)

CONFIG = {
    "_comment": "Heating oil supplier scrape config",
    "www.Example-Fuel.com": {"enabled": True, "pattern": "direct"},
    "tiered-oil.com": {
        "name": "Tiered Oil Co",
        "pattern": "table",
        "priceRegex": "\\$([0-9]\\.[0-9]{2,3})",
        "targetTier": 2,
        "pricePath": "/pricing",
        "minGallons": 100,
    },
    "market-signal.net": {"pattern": "direct", "displayable": False, "ignoreSSL": True},
}


class TestDomains(unittest.TestCase):
    def test_normalize_domain(self):
        self.assertEqual(normalize_domain("https://www.Acme-Oil.com/"), "acme-oil.com")
        self.assertEqual(normalize_domain("acme-oil.com"), "acme-oil.com")

    def test_domain_for_website(self):
        self.assertEqual(domain_for_website("http://www.acme-oil.com/prices?x=1"), "acme-oil.com")
        self.assertEqual(domain_for_website("acme-oil.com"), "acme-oil.com")
        self.assertIsNone(domain_for_website(""))
        self.assertIsNone(domain_for_website(None))

    def test_domain_to_name(self):
        self.assertEqual(domain_to_name("tiered-oil.com"), "Tiered Oil")
        self.assertEqual(domain_to_name("bigprice_heating.net"), "Bigprice Heating")


class TestExtractionRuleFromDict(unittest.TestCase):
    def test_defaults(self):
        rule = ExtractionRule.from_dict({})
        self.assertEqual(rule.pattern, ExtractionPattern.DIRECT)
        self.assertIsNone(rule.price_regex)
        self.assertTrue(rule.displayable)
        self.assertTrue(rule.enabled)
        self.assertFalse(rule.ignore_ssl)
        self.assertEqual(rule.min_gallons, DEFAULT_MIN_GALLONS)

    def test_unknown_pattern_behaves_like_direct(self):
        self.assertEqual(ExtractionRule.from_dict({"pattern": "regex"}).pattern, ExtractionPattern.DIRECT)

    def test_only_explicit_false_hides_price(self):
        self.assertTrue(ExtractionRule.from_dict({"displayable": None}).displayable)
        self.assertFalse(ExtractionRule.from_dict({"displayable": False}).displayable)


class TestScrapeConfig(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "scrape-config.json"
        self.path.write_text(json.dumps(CONFIG), encoding="utf-8")

    def tearDown(self):
        self._tmp.cleanup()

    def test_load_keys_by_normalized_domain(self):
        rules = load_scrape_config(self.path)
        self.assertEqual(set(rules), {"example-fuel.com", "tiered-oil.com", "market-signal.net"})

        tiered = rules["tiered-oil.com"]
        self.assertEqual(tiered.pattern, ExtractionPattern.TABLE)
        self.assertEqual(tiered.target_tier, 2)
        self.assertEqual(tiered.price_path, "/pricing")
        self.assertEqual(tiered.min_gallons, 100)

        signal = rules["market-signal.net"]
        self.assertFalse(signal.displayable)
        self.assertTrue(signal.ignore_ssl)

    def test_rule_lookup_by_website(self):
        rules = load_scrape_config(self.path)
        self.assertIs(get_rule_for_source("https://www.example-fuel.com/home", rules), rules["example-fuel.com"])
        self.assertIsNone(get_rule_for_source("https://unknown.com", rules))
        self.assertIsNone(get_rule_for_source(None, rules))

    def test_missing_file_is_empty(self):
        self.assertEqual(load_scrape_config(Path(self._tmp.name) / "missing.json"), {})

    def test_invalid_json_raises(self):
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ScrapeConfigError):
            load_scrape_config(self.path)

        self.path.write_text("[]", encoding="utf-8")
        with self.assertRaises(ScrapeConfigError):
            load_scrape_config(self.path)

    def test_sync_creates_then_updates(self):
        from heatscrape.db import SupplierDatabase

        db = SupplierDatabase(db_path=Path(self._tmp.name) / "test.db")

        stats = sync_sources_from_config(db, self.path)
        self.assertEqual((stats["processed"], stats["created"], stats["updated"]), (3, 3, 0))

        names = sorted(s.name for s in db.get_scrapable_sources())
        self.assertEqual(names, ["Example Fuel", "Market Signal", "Tiered Oil Co"])

        stats = sync_sources_from_config(db, self.path)
        self.assertEqual((stats["created"], stats["updated"]), (0, 3))
        self.assertEqual(len(db.get_scrapable_sources()), 3)


if __name__ == "__main__":
    unittest.main()
