"""
Margin health of a single position.

Pure integer arithmetic mirroring the ledger's fixed-point rules:

    notional  = |size| * price / PRICE_SCALE
    mark_pnl  = diff * |size| / price      (diff = price - entry for longs, entry - price for shorts)
    equity    = capital + mark_pnl
    ratio_bps = equity * BPS_SCALE / notional

Reported values are clamped to MAX_SAFE_INT, the bound the ledger's clients
work within. Classification is done on the exact values, so clamping can never
turn an unhealthy position into a healthy one.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

PRICE_SCALE = 1_000_000
BPS_SCALE = 10_000
MAX_SAFE_INT = 2 ** 53 - 1


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    LIQUIDATABLE = "liquidatable"
    DEGENERATE = "degenerate"


@dataclass(frozen=True)
class MarginHealth:
    equity: int
    notional: int
    mark_pnl: int
    margin_ratio_bps: int
    is_candidate: bool
    status: HealthStatus
    overflow: bool = False


def _trunc_div(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _clamp(value: int) -> int:
    if value > MAX_SAFE_INT:
        return MAX_SAFE_INT
    if value < -MAX_SAFE_INT:
        return -MAX_SAFE_INT
    return value


def _product_overflows(a: int, b: int) -> bool:
    if a == 0 or b == 0:
        return False
    return abs(a) > MAX_SAFE_INT // abs(b)


def mark_to_market_pnl(position_size: int, entry_price: int, reference_price: int) -> Tuple[int, bool]:
    """(pnl, overflowed). Zero when either price is unknown."""
    if entry_price <= 0 or reference_price <= 0 or position_size == 0:
        return 0, False
    abs_size = abs(position_size)
    diff = reference_price - entry_price if position_size > 0 else entry_price - reference_price
    if _product_overflows(diff, abs_size):
        return (MAX_SAFE_INT if diff > 0 else -MAX_SAFE_INT), True
    return _trunc_div(diff * abs_size, reference_price), False


def evaluate(
    position_size: int,
    entry_price: int,
    capital: int,
    reference_price: int,
    maintenance_margin_bps: int,
) -> MarginHealth:
    """
    Classify one position against the maintenance margin.

    Args:
        position_size: signed size, positive = long
        entry_price: entry price, e6
        capital: posted collateral, e6
        reference_price: live reference price, e6
        maintenance_margin_bps: maintenance requirement in basis points

    Returns:
        MarginHealth. A zero notional is DEGENERATE and never a candidate.
    """
    abs_size = abs(position_size)
    exact_notional = abs_size * reference_price // PRICE_SCALE if reference_price > 0 else 0
    overflow = _product_overflows(abs_size, reference_price)
    notional = _clamp(exact_notional)

    if exact_notional <= 0:
        return MarginHealth(
            equity=_clamp(capital),
            notional=0,
            mark_pnl=0,
            margin_ratio_bps=0,
            is_candidate=False,
            status=HealthStatus.DEGENERATE,
            overflow=overflow,
        )

    pnl, pnl_overflow = mark_to_market_pnl(position_size, entry_price, reference_price)
    if pnl_overflow:
        # Exact value for classification; the clamped one is what gets reported.
        diff = reference_price - entry_price if position_size > 0 else entry_price - reference_price
        exact_pnl = _trunc_div(diff * abs_size, reference_price)
    else:
        exact_pnl = pnl
    overflow = overflow or pnl_overflow

    exact_equity = capital + exact_pnl
    equity = _clamp(exact_equity)

    if exact_equity <= 0:
        return MarginHealth(
            equity=equity,
            notional=notional,
            mark_pnl=pnl,
            margin_ratio_bps=0,
            is_candidate=True,
            status=HealthStatus.LIQUIDATABLE,
            overflow=overflow,
        )

    if _product_overflows(exact_equity, BPS_SCALE):
        overflow = True
    exact_ratio = exact_equity * BPS_SCALE // exact_notional
    is_candidate = exact_ratio < maintenance_margin_bps

    return MarginHealth(
        equity=equity,
        notional=notional,
        mark_pnl=pnl,
        margin_ratio_bps=_clamp(exact_ratio),
        is_candidate=is_candidate,
        status=HealthStatus.LIQUIDATABLE if is_candidate else HealthStatus.HEALTHY,
        overflow=overflow,
    )
