import math
from typing import Any, Dict, Mapping, Optional

from .dcf_calculator import ASSUMPTION_FIELDS, Assumptions, InvalidInputError, require_number

RISK_FREE_RATE = 0.045  # US 10Y Treasury
MARKET_RISK_PREMIUM = 0.08
PRE_TAX_COST_OF_DEBT = 0.05
EQUITY_WEIGHT = 0.7
DEBT_WEIGHT = 0.3
DEBT_TAX_RATE = 0.25
WACC_FLOOR = 0.06

DEFAULT_REVENUE_GROWTH = 0.10
DEFAULT_TERMINAL_GROWTH = 0.03  # long-run GDP growth
DEFAULT_OPERATING_MARGIN = 0.15
DEFAULT_TAX_RATE = 0.25
DEFAULT_CAPEX_PCT = 0.05
DEFAULT_NWC_PCT = 0.02


def _safe_beta(beta: Optional[float]) -> float:
    try:
        value = float(beta) if beta is not None else 1.0
    except (TypeError, ValueError):
        return 1.0
    if not math.isfinite(value):
        return 1.0
    return value


def compute_cost_of_equity(
    beta: Optional[float],
    risk_free_rate: float = RISK_FREE_RATE,
    market_risk_premium: float = MARKET_RISK_PREMIUM,
) -> float:
    """Standard CAPM cost of equity."""
    return risk_free_rate + _safe_beta(beta) * market_risk_premium


def compute_wacc(cost_of_equity: float, min_wacc: float = WACC_FLOOR) -> float:
    """
    Blend equity and after-tax debt at a fixed 70/30 capital structure.
    The result never drops below `min_wacc`.
    """
    cost_of_debt_after_tax = PRE_TAX_COST_OF_DEBT * (1.0 - DEBT_TAX_RATE)
    raw = cost_of_equity * EQUITY_WEIGHT + DEBT_WEIGHT * cost_of_debt_after_tax
    return max(raw, min_wacc)


def default_assumptions(beta: Optional[float]) -> Assumptions:
    return Assumptions(
        revenue_growth=DEFAULT_REVENUE_GROWTH,
        terminal_growth=DEFAULT_TERMINAL_GROWTH,
        operating_margin=DEFAULT_OPERATING_MARGIN,
        tax_rate=DEFAULT_TAX_RATE,
        capex_pct=DEFAULT_CAPEX_PCT,
        nwc_pct=DEFAULT_NWC_PCT,
        wacc=compute_wacc(compute_cost_of_equity(beta)),
    )


def merge_assumptions(defaults: Assumptions, overrides: Optional[Mapping[str, Any]]) -> Assumptions:
    """Apply user overrides (camelCase keys) on top of the defaults."""
    if not overrides:
        return defaults
    merged: Dict[str, Any] = defaults.to_dict()
    unknown = sorted(key for key in overrides if key not in ASSUMPTION_FIELDS)
    if unknown:
        raise InvalidInputError(f"Unknown assumptions: {', '.join(unknown)}")
    for key, value in overrides.items():
        if value is None:
            continue
        merged[key] = require_number(value, key)
    return Assumptions.from_dict(merged)
