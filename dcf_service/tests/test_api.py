import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import patch

import pandas as pd
from fastapi import HTTPException

from dcf_service import financial_data
from dcf_service import main as api
from dcf_service.storage import AnalysisStore


def _make_ticker(price=100.0, beta=1.0):
    # Figures in raw dollars; the service scales them to millions.
    financials = pd.DataFrame(
        {
            "2023-12-31": {
                "Total Revenue": 100_000_000_000,
                "Operating Income": 15_000_000_000,
                "Net Income": 11_000_000_000,
            },
        }
    )
    return SimpleNamespace(
        financials=financials,
        fast_info={},
        info={
            "longName": "Test Corp",
            "currentPrice": price,
            "marketCap": 100_000_000_000,
            "sharesOutstanding": 1_000_000_000,
            "beta": beta,
            "totalDebt": 5_000_000_000,
            "totalCash": 2_000_000_000,
            "trailingPE": 9.1,
        },
    )


def _analyze(store, ticker="test", custom=None):
    body = api.AnalyzeRequest(ticker=ticker, customAssumptions=custom)
    return asyncio.run(api.analyze(body, store=store))


class AnalyzeEndpointTests(unittest.TestCase):
    def setUp(self):
        self.store = AnalysisStore("sqlite://")

    def test_analyze_returns_valuation_and_persists(self):
        custom = {"wacc": 0.08}
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()):
            payload = _analyze(self.store, custom=custom)

        self.assertTrue(payload["success"])
        data = payload["data"]
        self.assertEqual(data["ticker"], "TEST")
        self.assertEqual(data["companyName"], "Test Corp")
        # Same inputs as the hand-checked regression vector.
        self.assertEqual(data["valuation"]["intrinsicValue"], 199.01)
        self.assertEqual(data["valuation"]["upside"], 99.0)
        self.assertEqual(data["valuation"]["recommendation"], "STRONG_BUY")
        self.assertEqual(data["valuation"]["signal"], "strong_buy")
        self.assertEqual(data["dcf"]["enterpriseValue"], 202015)
        self.assertEqual(len(data["dcf"]["fcfProjections"]), 5)
        self.assertEqual(data["assumptions"]["wacc"], 0.08)
        self.assertEqual(data["assumptions"]["revenueGrowth"], 0.10)
        self.assertEqual(data["financials"]["revenueLTM"], 100000)
        self.assertEqual(data["multiples"]["peRatio"], 9.1)

        stored = self.store.get_analysis(payload["analysisId"])
        self.assertEqual(stored["ticker"], "TEST")
        self.assertEqual(stored["dcfAnalysis"]["recommendation"], "STRONG_BUY")
        self.assertEqual(stored["financials"]["ebitLTM"], 15000)
        self.assertFalse(stored["saved"])

    def test_default_wacc_comes_from_beta(self):
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker(beta=1.0)):
            payload = _analyze(self.store)
        self.assertAlmostEqual(payload["data"]["assumptions"]["wacc"], 0.09875, places=9)

    def test_invalid_ticker_is_rejected(self):
        for raw in (None, "", "AA PL", "$$$"):
            with self.subTest(raw=raw):
                with self.assertRaises(HTTPException) as ctx:
                    _analyze(self.store, ticker=raw)
                self.assertEqual(ctx.exception.status_code, 400)

    def test_upstream_failure_maps_to_502(self):
        with patch.object(financial_data.yf, "Ticker", side_effect=ConnectionError("down")):
            with self.assertRaises(HTTPException) as ctx:
                _analyze(self.store)
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("Failed to fetch financial data for TEST", ctx.exception.detail)

    def test_degenerate_assumptions_map_to_422(self):
        custom = {"wacc": 0.03, "terminalGrowth": 0.03}
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()):
            with self.assertRaises(HTTPException) as ctx:
                _analyze(self.store, custom=custom)
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(self.store.list_recent(), [])

    def test_overflowing_assumptions_map_to_422(self):
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()):
            with self.assertRaises(HTTPException) as ctx:
                _analyze(self.store, custom={"revenueGrowth": 1e70})
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(self.store.list_recent(), [])

    def test_unknown_assumption_maps_to_422(self):
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()):
            with self.assertRaises(HTTPException) as ctx:
                _analyze(self.store, custom={"growth": 0.5})
        self.assertEqual(ctx.exception.status_code, 422)

    def test_storage_failure_maps_to_500(self):
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()), patch.object(
            self.store, "create_analysis", side_effect=RuntimeError("disk full")
        ):
            with self.assertRaises(HTTPException) as ctx:
                _analyze(self.store)
        self.assertEqual(ctx.exception.status_code, 500)


class AnalysesEndpointTests(unittest.TestCase):
    def setUp(self):
        self.store = AnalysisStore("sqlite://")
        with patch.object(financial_data.yf, "Ticker", return_value=_make_ticker()):
            self.analysis_id = _analyze(self.store)["analysisId"]

    def test_list_returns_summaries(self):
        payload = asyncio.run(api.list_analyses(store=self.store))
        self.assertEqual(len(payload["analyses"]), 1)
        summary = payload["analyses"][0]
        self.assertEqual(summary["id"], self.analysis_id)
        self.assertIn("intrinsicValue", summary["dcfAnalysis"])
        self.assertIn("recommendation", summary["dcfAnalysis"])

    def test_get_counts_views(self):
        asyncio.run(api.get_analysis(self.analysis_id, store=self.store))
        payload = asyncio.run(api.get_analysis(self.analysis_id, store=self.store))
        self.assertEqual(payload["analysis"]["views"], 2)

    def test_get_missing_is_404(self):
        with self.assertRaises(HTTPException) as ctx:
            asyncio.run(api.get_analysis("missing", store=self.store))
        self.assertEqual(ctx.exception.status_code, 404)

    def test_save_marks_analysis(self):
        body = api.SaveAnalysisRequest(analysisId=self.analysis_id)
        payload = asyncio.run(api.save_analysis(body, store=self.store))
        self.assertTrue(payload["success"])
        self.assertTrue(payload["analysis"]["saved"])

    def test_save_requires_id(self):
        with self.assertRaises(HTTPException) as ctx:
            asyncio.run(api.save_analysis(api.SaveAnalysisRequest(), store=self.store))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_delete_removes_analysis(self):
        payload = asyncio.run(api.delete_analysis(analysis_id=self.analysis_id, store=self.store))
        self.assertEqual(payload, {"success": True})
        self.assertEqual(asyncio.run(api.list_analyses(store=self.store))["analyses"], [])

    def test_delete_missing_is_404(self):
        with self.assertRaises(HTTPException) as ctx:
            asyncio.run(api.delete_analysis(analysis_id="missing", store=self.store))
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
