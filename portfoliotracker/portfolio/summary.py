"""Portfolio read views: totals, per-position rows, and position detail.

Computes portfolio value, invested amount, P&L and annualized return from
aggregated positions and their instruments' current prices. Views are
plain dataclasses with a ``to_dict`` for the JSON surface; an unavailable
metric serializes as null with a sibling ``<name>Status`` reason.

"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from portfoliotracker.analysis.metrics import (
    PRICE_PENDING,
    MetricUnavailable,
    compute_metrics,
    metrics_from_totals,
)
from portfoliotracker.analysis.returns import portfolio_xirr, position_xirr
from portfoliotracker.config import (
    DEFAULT_CURRENCY,
    DEFAULT_XIRR_MAX_ITERATIONS,
    DEFAULT_XIRR_TOLERANCE,
)
from portfoliotracker.money import ZERO, Money, quantize_percent, sum_money
from portfoliotracker.portfolio.models import Account, Instrument, Position

SORT_KEYS = ("current_value", "return_percentage", "profit_loss", "quantity")


def _metric(name: str, value: Any) -> dict[str, Any]:
    """Serialize one metric, expanding MetricUnavailable to null + status."""
    if isinstance(value, MetricUnavailable):
        return {name: None, f"{name}Status": value.reason}
    if isinstance(value, Money):
        return {name: value.to_dict()}
    if isinstance(value, Decimal):
        return {name: str(value)}
    if isinstance(value, float):
        return {name: round(value, 6)}
    return {name: value}


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class PortfolioSummary:
    """Portfolio-wide totals.

    Attributes:
        total_current_value: Sum of position values, or unavailable if
            any position has no price.
        total_invested_amount: Sum of quantity x average cost.
        total_profit_loss: Value minus invested, or unavailable.
        total_return_percentage: P&L / invested x 100, or unavailable.
        positions_count: Number of positions.
        last_updated_at: Most recent position update, None if empty.
        xirr: Annualized portfolio return, or unavailable.

    """

    total_current_value: Money | MetricUnavailable
    total_invested_amount: Money
    total_profit_loss: Money | MetricUnavailable
    total_return_percentage: Decimal | MetricUnavailable
    positions_count: int
    last_updated_at: datetime | None = None
    xirr: float | MetricUnavailable = field(
        default_factory=lambda: MetricUnavailable("portfolio is empty")
    )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        result.update(_metric("totalCurrentValue", self.total_current_value))
        result.update(_metric("totalInvestedAmount", self.total_invested_amount))
        result.update(_metric("totalProfitLoss", self.total_profit_loss))
        result.update(_metric("totalReturnPercentage", self.total_return_percentage))
        result["positionsCount"] = self.positions_count
        result["lastUpdatedAt"] = _timestamp(self.last_updated_at)
        result.update(_metric("xirr", self.xirr))
        return result


@dataclass(frozen=True)
class PositionView:
    """One row of the positions list."""

    instrument_symbol: str
    instrument_name: str
    instrument_type: str
    quantity: Decimal
    average_cost: Money
    current_value: Money | MetricUnavailable
    invested_amount: Money
    profit_loss: Money | MetricUnavailable
    return_percentage: Decimal | MetricUnavailable

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "instrumentSymbol": self.instrument_symbol,
            "instrumentName": self.instrument_name,
            "instrumentType": self.instrument_type,
            "quantity": str(self.quantity),
            "averageCost": self.average_cost.to_dict(),
        }
        result.update(_metric("currentValue", self.current_value))
        result.update(_metric("investedAmount", self.invested_amount))
        result.update(_metric("profitLoss", self.profit_loss))
        result.update(_metric("returnPercentage", self.return_percentage))
        return result


@dataclass(frozen=True)
class AccountBreakdown:
    """A position's holding in one account."""

    account_id: str
    account_name: str
    broker_name: str
    quantity: Decimal
    cost_basis: Money
    invested_amount: Money

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "accountName": self.account_name,
            "brokerName": self.broker_name,
            "quantity": str(self.quantity),
            "costBasis": self.cost_basis.to_dict(),
            "investedAmount": self.invested_amount.to_dict(),
        }


@dataclass(frozen=True)
class PositionDetail:
    """A position row plus its account breakdown, price and timestamps."""

    view: PositionView
    accounts: tuple[AccountBreakdown, ...]
    current_price: Money | None
    price_updated_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int
    xirr: float | MetricUnavailable

    def to_dict(self) -> dict[str, Any]:
        result = self.view.to_dict()
        result["accounts"] = [a.to_dict() for a in self.accounts]
        result["currentPrice"] = (
            self.current_price.to_dict() if self.current_price is not None else None
        )
        result["priceUpdatedAt"] = _timestamp(self.price_updated_at)
        result["createdAt"] = _timestamp(self.created_at)
        result["updatedAt"] = _timestamp(self.updated_at)
        result["version"] = self.version
        result.update(_metric("xirr", self.xirr))
        return result


def _price_of(instrument: Instrument | None) -> Money | None:
    return instrument.current_price if instrument is not None else None


def position_view(position: Position, instrument: Instrument | None) -> PositionView:
    """Build the list row for one position.

    Args:
        position: Aggregated position.
        instrument: Its instrument, or None if unknown (treated as
            unpriced, named by symbol).

    Returns:
        PositionView with value-dependent fields unavailable when the
        instrument has no price.

    """
    metrics = compute_metrics(position, _price_of(instrument))
    return PositionView(
        instrument_symbol=position.instrument_symbol,
        instrument_name=instrument.name if instrument else position.instrument_symbol,
        instrument_type=instrument.instrument_type.value if instrument else "",
        quantity=position.total_quantity,
        average_cost=position.avg_cost_basis,
        current_value=metrics.current_value,
        invested_amount=metrics.invested_amount,
        profit_loss=metrics.pnl_amount,
        return_percentage=metrics.pnl_percent,
    )


def position_detail(
    position: Position,
    instrument: Instrument | None,
    accounts: Mapping[str, Account],
    as_of: date,
    *,
    xirr_tolerance: float = DEFAULT_XIRR_TOLERANCE,
    xirr_max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> PositionDetail:
    """Build the detail view for one position.

    Args:
        position: Aggregated position.
        instrument: Its instrument, or None.
        accounts: Accounts by id, for names in the breakdown.
        as_of: Valuation date for XIRR.
        xirr_tolerance: Objective tolerance for the XIRR solver.
        xirr_max_iterations: Iteration cap for the XIRR solver.

    Returns:
        PositionDetail with holdings ordered by account id.

    """
    breakdown = []
    for holding in position.holdings:
        account = accounts.get(holding.account_id)
        breakdown.append(
            AccountBreakdown(
                account_id=holding.account_id,
                account_name=account.name if account else holding.account_id,
                broker_name=account.broker_name if account else "",
                quantity=holding.quantity,
                cost_basis=holding.cost_basis,
                invested_amount=holding.invested_amount.quantized(),
            )
        )

    price = _price_of(instrument)
    return PositionDetail(
        view=position_view(position, instrument),
        accounts=tuple(breakdown),
        current_price=price,
        price_updated_at=instrument.price_updated_at if instrument else None,
        created_at=position.created_at,
        updated_at=position.updated_at,
        version=position.version,
        xirr=position_xirr(
            position,
            price,
            as_of,
            tolerance=xirr_tolerance,
            max_iterations=xirr_max_iterations,
        ),
    )


def summarize_portfolio(
    positions: Sequence[Position],
    instruments: Mapping[str, Instrument],
    as_of: date,
    currency: str = DEFAULT_CURRENCY,
    *,
    xirr_tolerance: float = DEFAULT_XIRR_TOLERANCE,
    xirr_max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS,
) -> PortfolioSummary:
    """Compute portfolio totals.

    Args:
        positions: All aggregated positions.
        instruments: Instruments by symbol.
        as_of: Valuation date for XIRR.
        currency: Currency of an empty portfolio's zero totals.
        xirr_tolerance: Objective tolerance for the XIRR solver.
        xirr_max_iterations: Iteration cap for the XIRR solver.

    Returns:
        PortfolioSummary. An empty portfolio has zero totals and a 0%
        return; a portfolio with any unpriced position has unavailable
        value, P&L and return.

    """
    if not positions:
        zero = Money.zero(currency)
        return PortfolioSummary(
            total_current_value=zero,
            total_invested_amount=zero,
            total_profit_loss=zero,
            total_return_percentage=quantize_percent(ZERO),
            positions_count=0,
        )

    currency = positions[0].currency
    invested: list[Money] = []
    values: list[Money] = []
    priced = True
    for position in positions:
        metrics = compute_metrics(position, _price_of(instruments.get(position.instrument_symbol)))
        invested.append(metrics.invested_amount)
        if isinstance(metrics.current_value, MetricUnavailable):
            priced = False
        else:
            values.append(metrics.current_value)

    totals = metrics_from_totals(
        sum_money(invested, currency),
        sum_money(values, currency) if priced else PRICE_PENDING,
    )
    return PortfolioSummary(
        total_current_value=totals.current_value,
        total_invested_amount=totals.invested_amount,
        total_profit_loss=totals.pnl_amount,
        total_return_percentage=totals.pnl_percent,
        positions_count=len(positions),
        last_updated_at=max(p.updated_at for p in positions),
        xirr=portfolio_xirr(
            positions,
            instruments,
            as_of,
            tolerance=xirr_tolerance,
            max_iterations=xirr_max_iterations,
        ),
    )


def _sort_value(view: PositionView, sort_by: str) -> Decimal | None:
    value = getattr(view, sort_by)
    if isinstance(value, MetricUnavailable):
        return None
    if isinstance(value, Money):
        return value.amount
    return value


def sort_positions(
    views: Sequence[PositionView],
    sort_by: str = "current_value",
    descending: bool = True,
) -> list[PositionView]:
    """Sort position rows; unavailable values always go last.

    Ties are broken by symbol so the order is stable across calls.

    Raises:
        ValueError: If sort_by is not one of SORT_KEYS.

    """
    if sort_by not in SORT_KEYS:
        msg = f"Unknown sort key: {sort_by!r}. Use one of {SORT_KEYS}"
        raise ValueError(msg)

    by_symbol = sorted(views, key=lambda v: v.instrument_symbol)
    available = [v for v in by_symbol if _sort_value(v, sort_by) is not None]
    pending = [v for v in by_symbol if _sort_value(v, sort_by) is None]
    available.sort(key=lambda v: _sort_value(v, sort_by) or ZERO, reverse=descending)
    return available + pending
