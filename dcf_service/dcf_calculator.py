import math
from dataclasses import dataclass, fields
from enum import Enum
from numbers import Real
from typing import Any, Dict, Mapping, Tuple


PROJECTION_YEARS = 5
DEPRECIATION_PCT = 0.03

STRONG_BUY_THRESHOLD = 0.30
BUY_THRESHOLD = 0.15
HOLD_THRESHOLD = -0.10
SELL_THRESHOLD = -0.25


class DCFComputationError(RuntimeError):
    """Raised when the DCF engine cannot build a valuation."""
    pass


class DivisionDegenerateError(DCFComputationError):
    """A denominator that must be strictly positive was zero or negative."""
    pass


class InvalidInputError(DCFComputationError, ValueError):
    """A required numeric input is missing, non-finite or has the wrong sign."""
    pass


class Recommendation(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    WEAK_HOLD = "WEAK_HOLD"
    SELL = "SELL"

    @property
    def signal(self) -> str:
        return self.value.lower()


# Wire (camelCase) name -> dataclass attribute.
ASSUMPTION_FIELDS: Dict[str, str] = {
    "revenueGrowth": "revenue_growth",
    "terminalGrowth": "terminal_growth",
    "operatingMargin": "operating_margin",
    "taxRate": "tax_rate",
    "capexPct": "capex_pct",
    "nwcPct": "nwc_pct",
    "wacc": "wacc",
}


@dataclass(frozen=True)
class Assumptions:
    revenue_growth: float
    terminal_growth: float
    operating_margin: float
    tax_rate: float
    capex_pct: float
    nwc_pct: float
    wacc: float

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Assumptions":
        values = {}
        for wire_name, attr in ASSUMPTION_FIELDS.items():
            if wire_name not in payload:
                raise InvalidInputError(f"Missing assumption: {wire_name}")
            values[attr] = require_number(payload[wire_name], wire_name)
        return cls(**values)

    def to_dict(self) -> Dict[str, float]:
        return {wire_name: getattr(self, attr) for wire_name, attr in ASSUMPTION_FIELDS.items()}


@dataclass(frozen=True)
class FinancialInputs:
    """LTM revenue, share count, debt and cash, all in the same unit scale (millions)."""

    revenue_ltm: float
    shares_outstanding: float
    debt: float
    cash: float


@dataclass(frozen=True)
class ValuationResult:
    intrinsic_value: float
    enterprise_value: int
    equity_value: int
    pv_fcf_5year: int
    pv_terminal_value: int
    fcf_projections: Tuple[int, ...]
    terminal_value: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intrinsicValue": self.intrinsic_value,
            "enterpriseValue": self.enterprise_value,
            "equityValue": self.equity_value,
            "pvFcf5Year": self.pv_fcf_5year,
            "pvTerminalValue": self.pv_terminal_value,
            "fcfProjections": list(self.fcf_projections),
            "terminalValue": self.terminal_value,
        }


def require_number(value: Any, name: str) -> float:
    # bool is an int subclass; a stray True must not price a company.
    if value is None or isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidInputError(f"{name} must be a number, got {value!r}")
    numeric = float(value)
    if not math.isfinite(numeric):
        raise InvalidInputError(f"{name} must be finite, got {value!r}")
    return numeric


def _round_half_up(value: float, digits: int = 0) -> float:
    """Round halves toward +inf, matching the frontend's Math.round."""
    scale = 10 ** digits
    scaled = _require_finite(value * scale + 0.5, "rounded value")
    return math.floor(scaled) / scale


def _round_money(value: float) -> int:
    return int(_round_half_up(value))


def _validate_financials(financials: FinancialInputs) -> None:
    for item in fields(FinancialInputs):
        require_number(getattr(financials, item.name), item.name)
    if financials.shares_outstanding < 0:
        raise InvalidInputError("shares_outstanding cannot be negative")


def _validate_assumptions(assumptions: Assumptions) -> None:
    for item in fields(Assumptions):
        require_number(getattr(assumptions, item.name), item.name)


def _require_finite(value: float, name: str) -> float:
    # Finite inputs can still overflow to inf/nan partway through.
    if not math.isfinite(value):
        raise InvalidInputError(f"{name} overflowed; inputs are out of range")
    return value


def project_free_cash_flows(revenue_ltm: float, assumptions: Assumptions) -> Tuple[float, ...]:
    """Unrounded free cash flow for years 1..5."""
    projections = []
    revenue = revenue_ltm
    for _ in range(PROJECTION_YEARS):
        revenue = revenue * (1 + assumptions.revenue_growth)
        ebit = revenue * assumptions.operating_margin
        nopat = ebit * (1 - assumptions.tax_rate)
        da = revenue * DEPRECIATION_PCT
        capex = revenue * assumptions.capex_pct
        nwc_change = revenue * assumptions.nwc_pct
        projections.append(nopat + da - capex - nwc_change)
    return tuple(projections)


def compute_terminal_value(final_fcf: float, wacc: float, terminal_growth: float) -> float:
    """Gordon growth value as of the end of the projection period."""
    spread = wacc - terminal_growth
    if spread <= 0:
        raise DivisionDegenerateError(
            f"WACC ({wacc}) must exceed terminal growth ({terminal_growth})"
        )
    return final_fcf * (1 + terminal_growth) / spread


def discount_factor(wacc: float, period: int) -> float:
    try:
        return 1 / math.pow(1 + wacc, period)
    except OverflowError as exc:
        raise InvalidInputError(f"WACC ({wacc}) is out of range") from exc


def calculate(financials: FinancialInputs, assumptions: Assumptions) -> ValuationResult:
    _validate_financials(financials)
    _validate_assumptions(assumptions)
    if 1 + assumptions.wacc <= 0:
        raise DivisionDegenerateError(f"WACC ({assumptions.wacc}) must be greater than -1")

    fcf_projections = project_free_cash_flows(financials.revenue_ltm, assumptions)
    for year, fcf in enumerate(fcf_projections, start=1):
        _require_finite(fcf, f"free cash flow year {year}")
    terminal_value = _require_finite(
        compute_terminal_value(
            fcf_projections[-1],
            assumptions.wacc,
            assumptions.terminal_growth,
        ),
        "terminal_value",
    )

    pv_fcf_5year = 0.0
    for period, fcf in enumerate(fcf_projections, start=1):
        pv_fcf_5year += fcf * discount_factor(assumptions.wacc, period)
    pv_terminal_value = terminal_value * discount_factor(assumptions.wacc, PROJECTION_YEARS)
    _require_finite(pv_fcf_5year, "pv_fcf_5year")
    _require_finite(pv_terminal_value, "pv_terminal_value")

    enterprise_value = _require_finite(pv_fcf_5year + pv_terminal_value, "enterprise_value")
    equity_value = _require_finite(enterprise_value - financials.debt + financials.cash, "equity_value")

    if financials.shares_outstanding <= 0:
        raise DivisionDegenerateError("shares_outstanding must be positive")
    intrinsic_value = _require_finite(equity_value / financials.shares_outstanding, "intrinsic_value")

    return ValuationResult(
        intrinsic_value=_round_half_up(intrinsic_value, 2),
        enterprise_value=_round_money(enterprise_value),
        equity_value=_round_money(equity_value),
        pv_fcf_5year=_round_money(pv_fcf_5year),
        pv_terminal_value=_round_money(pv_terminal_value),
        fcf_projections=tuple(_round_money(fcf) for fcf in fcf_projections),
        terminal_value=_round_money(terminal_value),
    )


def compute_upside(intrinsic_value: float, current_price: float) -> float:
    intrinsic = require_number(intrinsic_value, "intrinsic_value")
    price = require_number(current_price, "current_price")
    if price < 0:
        raise InvalidInputError("current_price cannot be negative")
    if price == 0:
        raise DivisionDegenerateError("current_price must be positive")
    return (intrinsic - price) / price


def upside_percent(intrinsic_value: float, current_price: float) -> float:
    """Upside in percent, one decimal place."""
    upside = compute_upside(intrinsic_value, current_price)
    return _round_half_up(upside * 1000) / 10


def classify(intrinsic_value: float, current_price: float) -> Recommendation:
    # Order matters: SELL is only reached once HOLD has failed, leaving
    # WEAK_HOLD as the band between SELL_THRESHOLD and HOLD_THRESHOLD.
    upside = compute_upside(intrinsic_value, current_price)
    if upside >= STRONG_BUY_THRESHOLD:
        return Recommendation.STRONG_BUY
    if upside >= BUY_THRESHOLD:
        return Recommendation.BUY
    if upside >= HOLD_THRESHOLD:
        return Recommendation.HOLD
    if upside < SELL_THRESHOLD:
        return Recommendation.SELL
    return Recommendation.WEAK_HOLD
