"""Position aggregation across brokerage accounts.

Rolls per-account purchases of the same instrument into one ``Position``
whose average cost basis is weighted by quantity:

    avg_cost_basis = sum(q_i * c_i) / sum(q_i)

A second purchase in the same account merges into the existing holding
using the same weighting. After every change the position totals are
recomputed from the full holding set, never adjusted incrementally, so
rounding error cannot accumulate across updates.

The functions here are pure: they take the current aggregate (or None)
and return a new one. Serializing concurrent writers to the same
instrument is the caller's job (see ``portfoliotracker.service``).

"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from portfoliotracker.errors import InvalidHoldingError
from portfoliotracker.money import ZERO, Money, to_decimal
from portfoliotracker.portfolio.models import Holding, Position, utc_now


def _require_positive(
    instrument_symbol: str,
    account_id: str,
    quantity: Decimal,
    cost_basis: Money,
) -> None:
    """Reject non-positive quantities and costs before touching the aggregate."""
    if quantity <= ZERO:
        msg = (
            f"Cannot apply holding {instrument_symbol}/{account_id}: "
            f"quantity must be positive, got {quantity}"
        )
        raise InvalidHoldingError(msg)
    if not cost_basis.is_positive():
        msg = (
            f"Cannot apply holding {instrument_symbol}/{account_id}: "
            f"cost basis must be positive, got {cost_basis}"
        )
        raise InvalidHoldingError(msg)


def merge_holding(
    existing: Holding,
    quantity: Decimal,
    cost_basis: Money,
    at: datetime,
) -> Holding:
    """Merge an additional purchase into an existing holding.

    Args:
        existing: The account's current holding.
        quantity: Units added by the purchase.
        cost_basis: Price paid per unit for the added units.
        at: Time of the change.

    Returns:
        A new holding with the summed quantity and re-averaged cost.

    """
    new_quantity = existing.quantity + quantity
    weighted = existing.cost_basis * existing.quantity + cost_basis * quantity
    return Holding(
        account_id=existing.account_id,
        instrument_symbol=existing.instrument_symbol,
        quantity=new_quantity,
        cost_basis=weighted / new_quantity,
        created_at=existing.created_at,
        updated_at=at,
    )


def apply_holding(  # noqa: PLR0913
    position: Position | None,
    instrument_symbol: str,
    account_id: str,
    quantity: Decimal | int | str,
    cost_basis: Money,
    at: datetime | None = None,
) -> Position:
    """Record a purchase of an instrument in an account.

    Creates the account's holding if it does not exist yet, otherwise merges
    the purchase into it by quantity-weighted averaging. Position totals are
    then recomputed over all holdings.

    Args:
        position: Current aggregate for the instrument, or None if the
            instrument is not held anywhere yet.
        instrument_symbol: Instrument being bought.
        account_id: Account the purchase belongs to.
        quantity: Units bought; must be strictly positive.
        cost_basis: Price per unit; must be strictly positive.
        at: Time of the purchase. Defaults to now.

    Returns:
        The updated Position with its version incremented.

    Raises:
        InvalidHoldingError: If quantity or cost basis is not strictly
            positive, or the position belongs to another symbol.

    """
    qty = to_decimal(quantity)
    _require_positive(instrument_symbol, account_id, qty, cost_basis)
    when = at or utc_now()

    if position is not None and position.instrument_symbol != instrument_symbol:
        msg = (
            f"Cannot apply {instrument_symbol} holding to position "
            f"{position.instrument_symbol}"
        )
        raise InvalidHoldingError(msg)

    holdings: list[Holding] = list(position.holdings) if position else []
    existing = position.holding_for(account_id) if position else None

    if existing is None:
        holdings.append(
            Holding(
                account_id=account_id,
                instrument_symbol=instrument_symbol,
                quantity=qty,
                cost_basis=cost_basis,
                created_at=when,
                updated_at=when,
            )
        )
    else:
        holdings = [
            merge_holding(h, qty, cost_basis, when) if h is existing else h
            for h in holdings
        ]

    return Position.from_holdings(
        instrument_symbol,
        holdings,
        version=position.version + 1 if position else 1,
        created_at=position.created_at if position else when,
        updated_at=when,
    )


def build_positions(
    records: Iterable[dict[str, Any]],
    currency: str,
) -> dict[str, Position]:
    """Fold purchase records into positions keyed by symbol.

    Args:
        records: Dicts with keys: symbol, account_id, quantity, cost_basis,
            and optionally at (datetime).
        currency: Currency of the cost_basis values.

    Returns:
        Dict mapping instrument symbol to its aggregated Position.

    """
    positions: dict[str, Position] = {}
    for record in records:
        symbol = record["symbol"]
        positions[symbol] = apply_holding(
            positions.get(symbol),
            symbol,
            record["account_id"],
            record["quantity"],
            Money.of(record["cost_basis"], currency),
            at=record.get("at"),
        )
    return positions
