import logging
import math
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

import pandas as pd
import requests
import yfinance as yf
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

try:
    from curl_cffi import requests as curl_requests
except Exception:  # pragma: no cover - optional dependency
    curl_requests = None

from .dcf_calculator import FinancialInputs

logger = logging.getLogger(__name__)

CACHE_TTL = int(os.environ.get("CACHE_TTL", "86400"))  # 24 hours
CACHE_KEY_PREFIX = "yahoo_"
UNIT_SCALE = 1_000_000  # valuation runs in millions


class FinancialDataError(RuntimeError):
    """Raised when the market-data provider cannot supply a usable snapshot."""
    pass


@dataclass
class CompanySnapshot:
    """Provider data for one ticker, in raw currency units."""

    company_name: str
    current_price: float = 0.0
    market_cap: float = 0.0
    shares_outstanding: float = 0.0
    beta: Optional[float] = None
    total_debt: float = 0.0
    total_cash: float = 0.0
    revenue: float = 0.0
    operating_income: float = 0.0
    net_income: float = 0.0
    pe_ratio: Optional[float] = None
    forward_pe: Optional[float] = None
    pb_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CompanySnapshot":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in known})

    def fill_missing(self, other: "CompanySnapshot") -> "CompanySnapshot":
        """Take values from `other` wherever this snapshot has nothing."""
        updates = {}
        for item in fields(self):
            if item.name == "company_name":
                continue
            if not getattr(self, item.name) and getattr(other, item.name):
                updates[item.name] = getattr(other, item.name)
        return replace(self, **updates)

    def multiples(self) -> Dict[str, Optional[float]]:
        return {
            "peRatio": self.pe_ratio,
            "forwardPE": self.forward_pe,
            "pbRatio": self.pb_ratio,
            "pegRatio": self.peg_ratio,
        }


def _cache_enabled() -> bool:
    if CACHE_TTL <= 0:
        return False
    if os.environ.get("ENABLE_FINANCIAL_CACHE", "1") == "0":
        return False
    return True


_DEFAULT_YF_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}


def _build_yf_session():
    # Yahoo rejects plain clients, so impersonate a browser with curl_cffi and
    # only fall back to a retrying requests.Session when it isn't installed.
    if curl_requests is not None:
        session = curl_requests.Session(impersonate="chrome")
        session.headers.update(_DEFAULT_YF_HEADERS)
    else:
        session = requests.Session()
        session.headers.update(_DEFAULT_YF_HEADERS)
        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(["GET", "POST"]),
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
    return session


_YF_SESSION = _build_yf_session()


def _get_yf_ticker(ticker: str) -> yf.Ticker:
    try:
        return yf.Ticker(ticker, session=_YF_SESSION)
    except Exception as exc:
        logger.warning("Custom session rejected for %s: %s; falling back to default session", ticker, exc)
        return yf.Ticker(ticker)


_QUOTE_SUMMARY_MODULES = ",".join(
    [
        "price",
        "summaryDetail",
        "financialData",
        "defaultKeyStatistics",
        "incomeStatementHistory",
    ]
)
_QUOTE_SUMMARY_URL = "https://query2.finance.yahoo.com/v10/finance/quoteSummary/{ticker}"
_QUOTE_SUMMARY_TIMEOUT = 10
_QUOTE_SUMMARY_SESSION = None


def _get_quote_summary_session():
    global _QUOTE_SUMMARY_SESSION
    if _QUOTE_SUMMARY_SESSION is not None:
        return _QUOTE_SUMMARY_SESSION
    if curl_requests is not None:
        session = curl_requests.Session()
    else:  # pragma: no cover - curl_cffi ships with yfinance, but keep fallback
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=Retry(total=2, backoff_factor=0.3))
        session.mount("https://", adapter)
        session.mount("http://", adapter)
    session.headers.update(_DEFAULT_YF_HEADERS)
    _QUOTE_SUMMARY_SESSION = session
    return session


def _to_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None:
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric):
        return default
    return numeric


def get_row(df: Optional[pd.DataFrame], label: str) -> Optional[pd.Series]:
    """
    Safely return a row Series from a DataFrame by label, or None.
    """
    if df is None or not isinstance(df, pd.DataFrame) or df.empty:
        return None
    if label in df.index:
        row = df.loc[label]
        if isinstance(row, pd.Series):
            return row
    return None


def last_non_na_value(series: Optional[pd.Series]) -> Optional[float]:
    if series is None:
        return None
    non_na = series.dropna()
    if non_na.empty:
        return None
    return _to_float(non_na.iloc[0], None)


def _first_row_value(df: Optional[pd.DataFrame], *labels: str) -> Optional[float]:
    for label in labels:
        value = last_non_na_value(get_row(df, label))
        if value is not None:
            return value
    return None


def _safe_attr(tk: Any, name: str) -> Any:
    # yfinance resolves these lazily over the network.
    try:
        return getattr(tk, name, None)
    except Exception as exc:
        logger.warning("yfinance %s lookup failed: %s", name, exc)
        return None


def _snapshot_from_ticker(ticker: str, tk: Any) -> CompanySnapshot:
    info = _safe_attr(tk, "info") or {}
    fast_info = _safe_attr(tk, "fast_info") or {}
    income = _safe_attr(tk, "financials")

    price = _to_float(
        info.get("currentPrice") or info.get("regularMarketPrice") or fast_info.get("last_price")
    )
    market_cap = _to_float(info.get("marketCap") or fast_info.get("market_cap"))
    shares = _to_float(info.get("sharesOutstanding") or fast_info.get("shares_outstanding"))

    revenue = _first_row_value(income, "Total Revenue")
    if revenue is None:
        revenue = _to_float(info.get("totalRevenue"))
    operating_income = _first_row_value(income, "Operating Income", "EBIT", "Ebit")
    if operating_income is None:
        operating_income = _to_float(info.get("operatingIncome"))
    net_income = _first_row_value(income, "Net Income")
    if net_income is None:
        net_income = _to_float(info.get("netIncomeToCommon"))

    return CompanySnapshot(
        company_name=info.get("longName") or info.get("shortName") or ticker,
        current_price=price,
        market_cap=market_cap,
        shares_outstanding=shares,
        beta=_to_float(info.get("beta"), None),
        total_debt=_to_float(info.get("totalDebt")),
        total_cash=_to_float(info.get("totalCash")),
        revenue=revenue,
        operating_income=operating_income,
        net_income=net_income,
        pe_ratio=_to_float(info.get("trailingPE"), None),
        forward_pe=_to_float(info.get("forwardPE"), None),
        pb_ratio=_to_float(info.get("priceToBook"), None),
        peg_ratio=_to_float(info.get("pegRatio") or info.get("trailingPegRatio"), None),
    )


def _raw(node: Any, *path: str) -> Optional[float]:
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, dict):
        node = node.get("raw")
    return _to_float(node, None)


def _snapshot_from_quote_summary(ticker: str, payload: Dict[str, Any]) -> Optional[CompanySnapshot]:
    result = (payload.get("quoteSummary") or {}).get("result")
    if not result:
        return None
    node = result[0]
    statements = (node.get("incomeStatementHistory") or {}).get("incomeStatementHistory") or [{}]
    latest = statements[0] if statements else {}

    price = _raw(node, "price", "regularMarketPrice") or 0.0
    market_cap = _raw(node, "summaryDetail", "marketCap") or 0.0
    return CompanySnapshot(
        company_name=(node.get("price") or {}).get("longName") or ticker,
        current_price=price,
        market_cap=market_cap,
        shares_outstanding=_raw(node, "defaultKeyStatistics", "sharesOutstanding") or 0.0,
        beta=_raw(node, "defaultKeyStatistics", "beta"),
        total_debt=_raw(node, "financialData", "totalDebt") or 0.0,
        total_cash=_raw(node, "financialData", "totalCash") or 0.0,
        revenue=_raw(latest, "totalRevenue") or 0.0,
        operating_income=_raw(latest, "operatingIncome") or 0.0,
        net_income=_raw(latest, "netIncome") or 0.0,
        pe_ratio=_raw(node, "summaryDetail", "trailingPE"),
        forward_pe=_raw(node, "summaryDetail", "forwardPE"),
        pb_ratio=_raw(node, "defaultKeyStatistics", "priceToBook"),
        peg_ratio=_raw(node, "defaultKeyStatistics", "pegRatio"),
    )


def _fetch_quote_summary(ticker: str) -> Optional[Dict[str, Any]]:
    session = _get_quote_summary_session()
    url = _QUOTE_SUMMARY_URL.format(ticker=ticker)
    try:
        response = session.get(
            url,
            params={"modules": _QUOTE_SUMMARY_MODULES},
            timeout=_QUOTE_SUMMARY_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()
    except Exception as exc:  # pragma: no cover - network
        logger.warning("Quote summary fallback failed for %s: %s", ticker, exc)
        return None


def _read_cache(store: Any, key: str) -> Optional[Dict[str, Any]]:
    if store is None or not _cache_enabled():
        return None
    try:
        return store.cache_get(key)
    except Exception as exc:
        logger.error("Cache read error for %s: %s", key, exc)
        return None


def _write_cache(store: Any, key: str, data: Dict[str, Any]) -> None:
    if store is None or not _cache_enabled():
        return
    try:
        store.cache_set(key, data, CACHE_TTL)
    except Exception as exc:
        logger.error("Cache write error for %s: %s", key, exc)


def fetch_company_snapshot(ticker: str, store: Any = None) -> CompanySnapshot:
    """
    Return provider data for `ticker`, served from the store's cache when a
    fresh entry exists.
    """
    key = f"{CACHE_KEY_PREFIX}{ticker}"
    cached = _read_cache(store, key)
    if cached:
        logger.info("Using cached data for %s", ticker)
        return CompanySnapshot.from_dict(cached)

    try:
        tk = _get_yf_ticker(ticker)
        snapshot = _snapshot_from_ticker(ticker, tk)
        if snapshot.current_price <= 0 or snapshot.revenue == 0:
            payload = _fetch_quote_summary(ticker)
            fallback = _snapshot_from_quote_summary(ticker, payload) if payload else None
            if fallback is not None:
                snapshot = snapshot.fill_missing(fallback)
    except Exception as exc:
        logger.error("Error fetching data for %s: %s", ticker, exc)
        raise FinancialDataError(f"Failed to fetch financial data for {ticker}") from exc

    if snapshot.current_price <= 0:
        raise FinancialDataError(f"No data found for ticker {ticker}")
    if snapshot.beta is None:
        # Neither source reported a beta; price at market risk.
        snapshot = replace(snapshot, beta=1.0)
    if snapshot.shares_outstanding <= 0 and snapshot.market_cap > 0:
        snapshot = replace(snapshot, shares_outstanding=snapshot.market_cap / snapshot.current_price)

    _write_cache(store, key, snapshot.to_dict())
    return snapshot


def snapshot_to_inputs(snapshot: CompanySnapshot) -> FinancialInputs:
    """Scale provider figures to millions so per-share values come out in currency units."""
    return FinancialInputs(
        revenue_ltm=snapshot.revenue / UNIT_SCALE,
        shares_outstanding=snapshot.shares_outstanding / UNIT_SCALE,
        debt=snapshot.total_debt / UNIT_SCALE,
        cash=snapshot.total_cash / UNIT_SCALE,
    )
