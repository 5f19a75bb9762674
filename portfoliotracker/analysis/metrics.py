"""Value and profit/loss metrics for positions.

``compute_metrics`` turns a position and its instrument's current price
into current value, invested amount, P&L and P&L percent. When no price
is known the value-dependent metrics are ``MetricUnavailable`` rather
than zero, so callers can render "price pending" instead of a fake loss.

"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TypeVar

from portfoliotracker.money import HUNDRED, ZERO, Money, quantize_percent
from portfoliotracker.portfolio.models import Position


@dataclass(frozen=True)
class MetricUnavailable:
    """A metric that cannot be computed, with the reason why.

    Not an error: display layers show it as "N/A" or "pending".
    """

    reason: str

    def __bool__(self) -> bool:
        return False


PRICE_PENDING = MetricUnavailable("price pending")

T = TypeVar("T")


def is_available(value: T | MetricUnavailable) -> bool:
    """True if ``value`` is an actual metric rather than MetricUnavailable."""
    return not isinstance(value, MetricUnavailable)


@dataclass(frozen=True)
class PositionMetrics:
    """Value metrics for one position (or a whole portfolio).

    Attributes:
        current_value: quantity x current price, or unavailable.
        invested_amount: quantity x average cost basis.
        pnl_amount: current_value - invested_amount, or unavailable.
        pnl_percent: pnl_amount / invested_amount x 100 (2 dp), or
            unavailable. Zero when nothing is invested.

    """

    current_value: Money | MetricUnavailable
    invested_amount: Money
    pnl_amount: Money | MetricUnavailable
    pnl_percent: Decimal | MetricUnavailable


def return_percent(pnl_amount: Money, invested_amount: Money) -> Decimal:
    """P&L as a percentage of the invested amount, 0 if nothing invested."""
    if invested_amount.is_zero():
        return quantize_percent(ZERO)
    return quantize_percent(pnl_amount.ratio(invested_amount) * HUNDRED)


def metrics_from_totals(
    invested_amount: Money,
    current_value: Money | MetricUnavailable,
) -> PositionMetrics:
    """Derive P&L metrics from an invested amount and a current value."""
    invested = invested_amount.quantized()
    if isinstance(current_value, MetricUnavailable):
        return PositionMetrics(
            current_value=current_value,
            invested_amount=invested,
            pnl_amount=current_value,
            pnl_percent=current_value,
        )
    value = current_value.quantized()
    pnl = value - invested
    return PositionMetrics(
        current_value=value,
        invested_amount=invested,
        pnl_amount=pnl,
        pnl_percent=return_percent(pnl, invested),
    )


def compute_metrics(
    position: Position,
    current_price: Money | None,
) -> PositionMetrics:
    """Compute value and P&L metrics for a position.

    Args:
        position: Aggregated position.
        current_price: Latest price per unit, or None if not yet known.

    Returns:
        PositionMetrics; value-dependent fields are PRICE_PENDING when
        ``current_price`` is None.

    Raises:
        CurrencyMismatchError: If price and cost basis currencies differ.

    """
    invested = position.avg_cost_basis * position.total_quantity
    if current_price is None:
        return metrics_from_totals(invested, PRICE_PENDING)
    return metrics_from_totals(invested, current_price * position.total_quantity)
