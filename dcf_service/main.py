import logging
import os
import re
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .cost_of_capital import default_assumptions, merge_assumptions
from .dcf_calculator import DCFComputationError, calculate, classify, upside_percent
from .financial_data import (
    UNIT_SCALE,
    FinancialDataError,
    fetch_company_snapshot,
    snapshot_to_inputs,
)
from .storage import AnalysisNotFoundError, AnalysisStore, get_store

logger = logging.getLogger(__name__)

_TICKER_RE = re.compile(r"^[A-Z0-9\.\-]+$")


def _normalize_ticker(raw: Optional[str]) -> str:
    value = (raw or "").upper().strip()
    if not value or not _TICKER_RE.match(value):
        raise HTTPException(status_code=400, detail="Invalid ticker")
    return value


ALLOWED_ORIGINS = os.environ.get(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
)


def _parse_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="DCF Stock Analyzer")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_origins(ALLOWED_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnalyzeRequest(BaseModel):
    ticker: Optional[str] = None
    customAssumptions: Optional[Dict[str, Any]] = None


class SaveAnalysisRequest(BaseModel):
    analysisId: Optional[str] = None


def _in_millions(value: float) -> float:
    return value / UNIT_SCALE


@app.get("/")
async def root():
    return {"message": "DCF analyzer is running. POST /api/analyze with a ticker."}


@app.post("/api/analyze")
async def analyze(body: AnalyzeRequest, store: AnalysisStore = Depends(get_store)):
    ticker_clean = _normalize_ticker(body.ticker)

    try:
        snapshot = fetch_company_snapshot(ticker_clean, store)
    except FinancialDataError as exc:
        logger.warning("Upstream data unavailable for %s: %s", ticker_clean, exc)
        raise HTTPException(status_code=502, detail=str(exc))

    try:
        assumptions = merge_assumptions(default_assumptions(snapshot.beta), body.customAssumptions)
        result = calculate(snapshot_to_inputs(snapshot), assumptions)
        recommendation = classify(result.intrinsic_value, snapshot.current_price)
        upside = upside_percent(result.intrinsic_value, snapshot.current_price)
    except DCFComputationError as exc:
        logger.warning("DCF unavailable for %s: %s", ticker_clean, exc)
        raise HTTPException(status_code=422, detail=str(exc))

    dcf = result.to_dict()
    assumptions_payload = assumptions.to_dict()
    financials_payload = {
        "revenueLTM": _in_millions(snapshot.revenue),
        "operatingMargin": assumptions.operating_margin,
        "beta": snapshot.beta,
        "marketCap": _in_millions(snapshot.market_cap),
    }

    try:
        analysis = store.create_analysis(
            {
                "ticker": ticker_clean,
                "companyName": snapshot.company_name,
                "currentPrice": snapshot.current_price,
                "dcfAnalysis": {
                    "intrinsicValue": result.intrinsic_value,
                    "upside": upside,
                    "recommendation": recommendation.value,
                    "enterpriseValue": result.enterprise_value,
                    "equityValue": result.equity_value,
                    "pvFcf5Year": result.pv_fcf_5year,
                    "pvTerminalValue": result.pv_terminal_value,
                },
                "assumptions": assumptions_payload,
                "financials": {
                    **financials_payload,
                    "ebitLTM": _in_millions(snapshot.operating_income),
                },
                "multiples": snapshot.multiples(),
            }
        )
    except Exception:
        logger.exception("Failed to store analysis for %s", ticker_clean)
        raise HTTPException(
            status_code=500,
            detail="Failed to analyze stock. Please check the ticker and try again.",
        )

    return {
        "success": True,
        "data": {
            "ticker": ticker_clean,
            "companyName": snapshot.company_name,
            "currentPrice": snapshot.current_price,
            "valuation": {
                "intrinsicValue": result.intrinsic_value,
                "upside": upside,
                "recommendation": recommendation.value,
                "signal": recommendation.signal,
            },
            "dcf": dcf,
            "assumptions": assumptions_payload,
            "financials": financials_payload,
            "multiples": snapshot.multiples(),
        },
        "analysisId": analysis["id"],
    }


@app.get("/api/analyses")
async def list_analyses(store: AnalysisStore = Depends(get_store)):
    return {"analyses": store.list_recent()}


@app.get("/api/analyses/{analysis_id}")
async def get_analysis(analysis_id: str, store: AnalysisStore = Depends(get_store)):
    try:
        analysis = store.get_analysis(analysis_id, count_view=True)
    except AnalysisNotFoundError:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"analysis": analysis}


@app.post("/api/analyses")
async def save_analysis(body: SaveAnalysisRequest, store: AnalysisStore = Depends(get_store)):
    if not body.analysisId:
        raise HTTPException(status_code=400, detail="analysisId is required")
    try:
        analysis = store.mark_saved(body.analysisId)
    except AnalysisNotFoundError:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"success": True, "analysis": analysis}


@app.delete("/api/analyses")
async def delete_analysis(
    analysis_id: Optional[str] = Query(None, alias="analysisId"),
    store: AnalysisStore = Depends(get_store),
):
    if not analysis_id:
        raise HTTPException(status_code=400, detail="analysisId is required")
    try:
        store.delete_analysis(analysis_id)
    except AnalysisNotFoundError:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"success": True}
