"""Annualized return (XIRR) over irregular cash flows.

XIRR is the rate ``r`` solving

    sum(CF_i / (1 + r) ** ((d_i - d_0) / 365)) = 0

where purchases are negative cash flows dated when the holding was
created and the current value is a positive cash flow dated "now".

The solver is a bounded, stateless function: Newton's method seeded at
10% (``scipy.optimize.newton``), falling back to Brent's bracketing
method (``scipy.optimize.brentq``) on [-99.9%, 1000%]. Amounts are
normalized by the largest absolute flow before solving, so the objective
tolerance does not depend on portfolio size. Any series that cannot be
solved yields ``MetricUnavailable`` instead of a guessed number.

"""

from __future__ import annotations

import logging
import math
import warnings
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

import numpy as np
from scipy import optimize

from portfoliotracker.analysis.metrics import (
    PRICE_PENDING,
    MetricUnavailable,
    compute_metrics,
)
from portfoliotracker.config import DEFAULT_XIRR_MAX_ITERATIONS, DEFAULT_XIRR_TOLERANCE
from portfoliotracker.money import Money, sum_money

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from portfoliotracker.portfolio.models import Instrument, Position

logger = logging.getLogger(__name__)

_DAYS_PER_YEAR = 365.0
_INITIAL_GUESS = 0.1
_BRACKET = (-0.999, 10.0)


@dataclass(frozen=True)
class CashFlowEvent:
    """A dated cash flow: negative for money invested, positive for value."""

    date: date
    amount: Decimal


def _objective(
    amounts: NDArray[np.float64],
    years: NDArray[np.float64],
    rate: float,
) -> float:
    """Net present value of normalized flows at ``rate``."""
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        return float(np.sum(amounts / (1.0 + rate) ** years))


def _derivative(
    amounts: NDArray[np.float64],
    years: NDArray[np.float64],
    rate: float,
) -> float:
    """First derivative of the objective with respect to ``rate``."""
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        return float(np.sum(-years * amounts / (1.0 + rate) ** (years + 1.0)))


def _solve_newton(
    amounts: NDArray[np.float64],
    years: NDArray[np.float64],
    max_iterations: int,
) -> float | None:
    """Run Newton's method from the initial guess; None if it fails."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        try:
            root, result = optimize.newton(
                lambda r: _objective(amounts, years, r),
                _INITIAL_GUESS,
                fprime=lambda r: _derivative(amounts, years, r),
                maxiter=max_iterations,
                full_output=True,
                disp=False,
            )
        except (ArithmeticError, ValueError):
            return None
    root = float(root)
    if not result.converged or not math.isfinite(root):
        return None
    low, high = _BRACKET
    if not low <= root <= high:
        return None
    return root


def _solve_bracketed(
    amounts: NDArray[np.float64],
    years: NDArray[np.float64],
    max_iterations: int,
) -> float | None:
    """Run Brent's method on the fixed bracket; None if it fails."""
    low, high = _BRACKET
    try:
        root, result = optimize.brentq(
            lambda r: _objective(amounts, years, r),
            low,
            high,
            xtol=1e-12,
            maxiter=max_iterations,
            full_output=True,
            disp=False,
        )
    except (ArithmeticError, ValueError):
        return None
    root = float(root)
    if not result.converged or not math.isfinite(root):
        return None
    return root


def xirr(
    cash_flows: Iterable[CashFlowEvent],
    *,
    tolerance: float = DEFAULT_XIRR_TOLERANCE,
    max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> float | MetricUnavailable:
    """Compute the annualized internal rate of return of dated cash flows.

    Args:
        cash_flows: Signed flows in any order; negative = invested,
            positive = returned or current value.
        tolerance: Maximum absolute value of the normalized objective at
            the accepted root.
        max_iterations: Iteration cap for each solver stage.

    Returns:
        The rate as a decimal (0.08 for 8% per year), or MetricUnavailable
        when the series has fewer than two flows, no elapsed time, no flow
        of each sign, no sign change on the bracket, or does not converge.

    """
    flows = sorted(cash_flows, key=lambda f: f.date)
    if len(flows) < 2:  # noqa: PLR2004
        return MetricUnavailable("at least two cash flows are required")

    amounts = np.array([float(f.amount) for f in flows], dtype=np.float64)
    start = flows[0].date
    years = np.array(
        [(f.date - start).days / _DAYS_PER_YEAR for f in flows],
        dtype=np.float64,
    )

    if not np.any(years > 0):
        return MetricUnavailable("cash flows span no time")
    if not (np.any(amounts < 0) and np.any(amounts > 0)):
        return MetricUnavailable("cash flows do not change sign")

    amounts = amounts / np.max(np.abs(amounts))

    low, high = _BRACKET
    f_low = _objective(amounts, years, low)
    f_high = _objective(amounts, years, high)
    if not (math.isfinite(f_low) and math.isfinite(f_high)):
        return MetricUnavailable("objective is not finite on the bracket")
    if np.sign(f_low) == np.sign(f_high):
        return MetricUnavailable("no sign change on the search bracket")

    rate = _solve_newton(amounts, years, max_iterations)
    if rate is None or abs(_objective(amounts, years, rate)) >= tolerance:
        logger.debug("Newton did not converge; falling back to bracketing")
        rate = _solve_bracketed(amounts, years, max_iterations)

    if rate is None or abs(_objective(amounts, years, rate)) >= tolerance:
        return MetricUnavailable("XIRR did not converge")
    return rate


def compute_xirr(
    cash_flows: Sequence[CashFlowEvent],
    as_of_value: Money | MetricUnavailable,
    as_of: date,
    *,
    tolerance: float = DEFAULT_XIRR_TOLERANCE,
    max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> float | MetricUnavailable:
    """XIRR of purchase flows closed out by a current value.

    Args:
        cash_flows: Purchase outflows (negative amounts).
        as_of_value: Current value, appended as a positive inflow at
            ``as_of``. If unavailable, it is returned unchanged.
        as_of: Valuation date.
        tolerance: See ``xirr``.
        max_iterations: See ``xirr``.

    Returns:
        Annualized rate or MetricUnavailable.

    """
    if isinstance(as_of_value, MetricUnavailable):
        return as_of_value
    series = [*cash_flows, CashFlowEvent(as_of, as_of_value.amount)]
    return xirr(series, tolerance=tolerance, max_iterations=max_iterations)


def position_cash_flows(position: Position) -> list[CashFlowEvent]:
    """Purchase outflows for a position, one per holding.

    Each holding contributes its invested amount dated at the holding's
    creation date.
    """
    return sorted(
        (
            CashFlowEvent(h.created_at.date(), -h.invested_amount.amount)
            for h in position.holdings
        ),
        key=lambda f: f.date,
    )


def portfolio_cash_flows(positions: Iterable[Position]) -> list[CashFlowEvent]:
    """All positions' purchase outflows merged into one chronological series."""
    flows: list[CashFlowEvent] = []
    for position in positions:
        flows.extend(position_cash_flows(position))
    return sorted(flows, key=lambda f: f.date)


def position_xirr(
    position: Position,
    current_price: Money | None,
    as_of: date,
    *,
    tolerance: float = DEFAULT_XIRR_TOLERANCE,
    max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> float | MetricUnavailable:
    """XIRR of a single position valued at ``current_price``."""
    value = compute_metrics(position, current_price).current_value
    return compute_xirr(
        position_cash_flows(position),
        value,
        as_of,
        tolerance=tolerance,
        max_iterations=max_iterations,
    )


def portfolio_xirr(
    positions: Sequence[Position],
    instruments: Mapping[str, Instrument],
    as_of: date,
    *,
    tolerance: float = DEFAULT_XIRR_TOLERANCE,
    max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> float | MetricUnavailable:
    """XIRR of the whole portfolio.

    Unavailable if the portfolio is empty or any position lacks a price.
    """
    if not positions:
        return MetricUnavailable("portfolio is empty")

    values: list[Money] = []
    for position in positions:
        instrument = instruments.get(position.instrument_symbol)
        price = instrument.current_price if instrument else None
        value = compute_metrics(position, price).current_value
        if isinstance(value, MetricUnavailable):
            return PRICE_PENDING
        values.append(value)

    total = sum_money(values, positions[0].currency)
    return compute_xirr(
        portfolio_cash_flows(positions),
        total,
        as_of,
        tolerance=tolerance,
        max_iterations=max_iterations,
    )
