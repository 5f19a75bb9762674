"""Portfolio reconciliation against a broker statement.

Compares the system's aggregated positions with the positions a broker
reports and classifies every symbol:

- match: quantities equal and values within tolerance (or a value is
  unknown on either side);
- quantity mismatch: quantities differ by any amount;
- value mismatch: quantities equal but values differ by more than
  ``tolerance`` x statement value;
- missing in system: only the statement has the symbol;
- extra in system: only the system has the symbol.

Quantity is checked first; a symbol with a quantity mismatch is not also
reported as a value mismatch. Matching is by exact symbol only.

The engine is read-only and deterministic: the same inputs always give an
equal ``ReconciliationResult`` with every list sorted by symbol.

"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from portfoliotracker.analysis.metrics import MetricUnavailable, compute_metrics
from portfoliotracker.money import (
    HUNDRED,
    ZERO,
    Money,
    quantize_percent,
)
from portfoliotracker.portfolio.models import Instrument, Position


@dataclass(frozen=True)
class PositionSnapshot:
    """One side of a reconciliation row.

    Attributes:
        symbol: Instrument symbol.
        quantity: Units held.
        value: Market value, or None if not known.

    """

    symbol: str
    quantity: Decimal
    value: Money | None = None

    def combine(self, other: PositionSnapshot) -> PositionSnapshot:
        """Sum two lines for the same symbol.

        The value is only known if both lines carry one; otherwise a
        partial value would be compared against the full position.
        """
        if self.value is None or other.value is None:
            value = None
        else:
            value = self.value + other.value
        return PositionSnapshot(self.symbol, self.quantity + other.quantity, value)


@dataclass(frozen=True)
class QuantityMismatch:
    symbol: str
    system_qty: Decimal
    statement_qty: Decimal


@dataclass(frozen=True)
class ValueMismatch:
    symbol: str
    system_value: Money
    statement_value: Money
    delta_pct: Decimal | None


@dataclass(frozen=True)
class MissingInSystem:
    symbol: str
    statement_qty: Decimal


@dataclass(frozen=True)
class ExtraInSystem:
    symbol: str
    system_qty: Decimal


@dataclass(frozen=True)
class ReconciliationResult:
    """Classified outcome of one reconciliation run."""

    matches: tuple[str, ...] = field(default_factory=tuple)
    quantity_mismatches: tuple[QuantityMismatch, ...] = field(default_factory=tuple)
    value_mismatches: tuple[ValueMismatch, ...] = field(default_factory=tuple)
    missing_in_system: tuple[MissingInSystem, ...] = field(default_factory=tuple)
    extra_in_system: tuple[ExtraInSystem, ...] = field(default_factory=tuple)

    def has_discrepancies(self) -> bool:
        return any(
            [
                self.quantity_mismatches,
                self.value_mismatches,
                self.missing_in_system,
                self.extra_in_system,
            ]
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with exact decimals rendered as strings."""
        return {
            "matches": [{"symbol": s} for s in self.matches],
            "quantityMismatches": [
                {
                    "symbol": m.symbol,
                    "systemQty": str(m.system_qty),
                    "statementQty": str(m.statement_qty),
                }
                for m in self.quantity_mismatches
            ],
            "valueMismatches": [
                {
                    "symbol": m.symbol,
                    "systemValue": m.system_value.to_dict(),
                    "statementValue": m.statement_value.to_dict(),
                    "deltaPct": None if m.delta_pct is None else str(m.delta_pct),
                }
                for m in self.value_mismatches
            ],
            "missingInSystem": [
                {"symbol": m.symbol, "statementQty": str(m.statement_qty)}
                for m in self.missing_in_system
            ],
            "extraInSystem": [
                {"symbol": m.symbol, "systemQty": str(m.system_qty)}
                for m in self.extra_in_system
            ],
        }


def snapshot_positions(
    positions: Mapping[str, Position] | list[Position],
    instruments: Mapping[str, Instrument],
) -> dict[str, PositionSnapshot]:
    """Build the system side of a reconciliation from aggregated positions.

    Args:
        positions: Aggregated positions (a list or a symbol-keyed mapping).
        instruments: Instruments by symbol, providing current prices.

    Returns:
        Snapshots keyed by upper-cased symbol; value is None when the
        instrument has no price.

    """
    items = positions.values() if isinstance(positions, Mapping) else positions
    snapshots: dict[str, PositionSnapshot] = {}
    for position in items:
        instrument = instruments.get(position.instrument_symbol)
        price = instrument.current_price if instrument else None
        value = compute_metrics(position, price).current_value
        symbol = position.instrument_symbol.strip().upper()
        snapshots[symbol] = PositionSnapshot(
            symbol=symbol,
            quantity=position.total_quantity,
            value=None if isinstance(value, MetricUnavailable) else value,
        )
    return snapshots


def _value_delta_pct(system_value: Money, statement_value: Money) -> Decimal | None:
    if statement_value.is_zero():
        return None
    return quantize_percent(
        (system_value - statement_value).ratio(statement_value) * HUNDRED
    )


def _values_within_tolerance(
    system_value: Money,
    statement_value: Money,
    tolerance: Decimal,
) -> bool:
    """True if values differ by at most ``tolerance`` x |statement value|."""
    delta = abs((system_value - statement_value).amount)
    return delta <= tolerance * abs(statement_value.amount)


def reconcile(
    system_positions: Mapping[str, PositionSnapshot],
    statement_lines: Mapping[str, PositionSnapshot],
    tolerance_fraction: Decimal,
) -> ReconciliationResult:
    """Compare system positions with statement lines.

    Args:
        system_positions: System snapshots keyed by symbol.
        statement_lines: Statement snapshots keyed by symbol.
        tolerance_fraction: Allowed value deviation as a fraction of the
            statement value (e.g., Decimal("0.005") for 0.5%).

    Returns:
        ReconciliationResult with every list sorted by symbol.

    Raises:
        ValueError: If tolerance_fraction is negative.
        CurrencyMismatchError: If system and statement values use
            different currencies.

    """
    if tolerance_fraction < ZERO:
        msg = f"tolerance_fraction must be non-negative, got {tolerance_fraction}"
        raise ValueError(msg)

    matches: list[str] = []
    quantity_mismatches: list[QuantityMismatch] = []
    value_mismatches: list[ValueMismatch] = []
    missing: list[MissingInSystem] = []
    extra: list[ExtraInSystem] = []

    for symbol in sorted(set(system_positions) | set(statement_lines)):
        system = system_positions.get(symbol)
        statement = statement_lines.get(symbol)

        if system is None:
            if statement is not None:
                missing.append(MissingInSystem(symbol, statement.quantity))
            continue
        if statement is None:
            extra.append(ExtraInSystem(symbol, system.quantity))
            continue

        if system.quantity != statement.quantity:
            quantity_mismatches.append(
                QuantityMismatch(symbol, system.quantity, statement.quantity)
            )
            continue

        if (
            system.value is not None
            and statement.value is not None
            and not _values_within_tolerance(
                system.value, statement.value, tolerance_fraction
            )
        ):
            value_mismatches.append(
                ValueMismatch(
                    symbol=symbol,
                    system_value=system.value,
                    statement_value=statement.value,
                    delta_pct=_value_delta_pct(system.value, statement.value),
                )
            )
            continue

        matches.append(symbol)

    return ReconciliationResult(
        matches=tuple(matches),
        quantity_mismatches=tuple(quantity_mismatches),
        value_mismatches=tuple(value_mismatches),
        missing_in_system=tuple(missing),
        extra_in_system=tuple(extra),
    )
