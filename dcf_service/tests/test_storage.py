import unittest
from datetime import datetime, timedelta, timezone

from dcf_service.storage import AnalysisNotFoundError, AnalysisStore


def _record(ticker="AAPL", **overrides):
    record = {
        "ticker": ticker,
        "companyName": f"{ticker} Inc.",
        "currentPrice": 100.0,
        "dcfAnalysis": {
            "intrinsicValue": 120.5,
            "upside": 20.5,
            "recommendation": "BUY",
            "enterpriseValue": 1000,
            "equityValue": 900,
            "pvFcf5Year": 300,
            "pvTerminalValue": 700,
        },
        "assumptions": {"wacc": 0.09},
        "financials": {"revenueLTM": 500.0},
        "multiples": {"peRatio": 25.0},
    }
    record.update(overrides)
    return record


class AnalysisStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = AnalysisStore("sqlite://", retention_seconds=3600)

    def test_create_and_get(self):
        created = self.store.create_analysis(_record(ticker="msft"))
        self.assertEqual(created["ticker"], "MSFT")
        self.assertFalse(created["saved"])
        self.assertEqual(created["views"], 0)
        fetched = self.store.get_analysis(created["id"])
        self.assertEqual(fetched["dcfAnalysis"]["recommendation"], "BUY")
        self.assertEqual(fetched["multiples"], {"peRatio": 25.0})

    def test_get_counts_views_when_asked(self):
        created = self.store.create_analysis(_record())
        self.store.get_analysis(created["id"], count_view=True)
        viewed = self.store.get_analysis(created["id"], count_view=True)
        self.assertEqual(viewed["views"], 2)

    def test_list_recent_is_newest_first_and_limited(self):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        for offset, ticker in enumerate(["OLD", "MID", "NEW"]):
            self.store.create_analysis(_record(ticker=ticker, analysisDate=now - timedelta(minutes=10 - offset)))
        recent = self.store.list_recent(limit=2)
        self.assertEqual([row["ticker"] for row in recent], ["NEW", "MID"])
        self.assertEqual(recent[0]["dcfAnalysis"], {"intrinsicValue": 120.5, "recommendation": "BUY"})
        self.assertNotIn("assumptions", recent[0])

    def test_mark_saved_and_delete(self):
        created = self.store.create_analysis(_record())
        saved = self.store.mark_saved(created["id"])
        self.assertTrue(saved["saved"])
        self.store.delete_analysis(created["id"])
        with self.assertRaises(AnalysisNotFoundError):
            self.store.get_analysis(created["id"])

    def test_unknown_ids_raise(self):
        with self.assertRaises(AnalysisNotFoundError):
            self.store.mark_saved("missing")
        with self.assertRaises(AnalysisNotFoundError):
            self.store.delete_analysis("missing")

    def test_purge_drops_only_stale_unsaved_analyses(self):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        stale = self.store.create_analysis(_record(ticker="STALE", analysisDate=now - timedelta(hours=2)))
        kept = self.store.create_analysis(_record(ticker="KEEP", analysisDate=now - timedelta(hours=2)))
        fresh = self.store.create_analysis(_record(ticker="FRESH", analysisDate=now))
        self.store.mark_saved(kept["id"])

        counts = self.store.purge_expired(now=now)

        self.assertEqual(counts["analyses"], 1)
        with self.assertRaises(AnalysisNotFoundError):
            self.store.get_analysis(stale["id"])
        self.assertTrue(self.store.get_analysis(kept["id"])["saved"])
        self.assertEqual(self.store.get_analysis(fresh["id"])["ticker"], "FRESH")


class CacheTests(unittest.TestCase):
    def setUp(self):
        self.store = AnalysisStore("sqlite://")

    def test_set_then_get(self):
        self.store.cache_set("yahoo_AAPL", {"current_price": 190.0}, ttl_seconds=60)
        self.assertEqual(self.store.cache_get("yahoo_AAPL"), {"current_price": 190.0})
        self.assertIsNone(self.store.cache_get("yahoo_MSFT"))

    def test_set_overwrites_existing_key(self):
        self.store.cache_set("k", {"v": 1}, ttl_seconds=60)
        self.store.cache_set("k", {"v": 2}, ttl_seconds=60)
        self.assertEqual(self.store.cache_get("k"), {"v": 2})

    def test_expired_entries_are_not_served(self):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        self.store.cache_set("k", {"v": 1}, ttl_seconds=60, now=now - timedelta(minutes=5))
        self.assertIsNone(self.store.cache_get("k", now=now))
        # The expired row was deleted on read, so an earlier clock finds nothing either.
        self.assertIsNone(self.store.cache_get("k", now=now - timedelta(minutes=5)))

    def test_purge_removes_expired_cache(self):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        self.store.cache_set("old", {"v": 1}, ttl_seconds=1, now=now - timedelta(minutes=1))
        self.store.cache_set("new", {"v": 2}, ttl_seconds=600, now=now)
        counts = self.store.purge_expired(now=now)
        self.assertEqual(counts["cache"], 1)
        self.assertEqual(self.store.cache_get("new", now=now), {"v": 2})


if __name__ == "__main__":
    unittest.main()
