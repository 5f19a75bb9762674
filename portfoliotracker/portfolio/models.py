"""Domain models for positions, holdings, instruments, and accounts.

All models are frozen dataclasses. Changing a position means building a
new ``Position`` (see ``portfoliotracker.portfolio.aggregator``), which
keeps the aggregate totals consistent with its holdings by construction.

"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from portfoliotracker.errors import InvalidHoldingError
from portfoliotracker.money import ZERO, Money, quantize_quantity


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=UTC)


class InstrumentType(str, Enum):
    """Kinds of instruments the tracker supports."""

    STOCK = "STOCK"
    ETF = "ETF"
    BOND_ETF = "BOND_ETF"
    POLISH_GOV_BOND = "POLISH_GOV_BOND"


class AccountType(str, Enum):
    """Brokerage account wrappers.

    IKE and IKZE are Polish tax-advantaged retirement accounts.
    """

    NORMAL = "NORMAL"
    IKE = "IKE"
    IKZE = "IKZE"


@dataclass(frozen=True)
class Instrument:
    """Reference data for a tradable instrument.

    Attributes:
        symbol: Ticker or ISIN; the instrument's identity.
        name: Display name.
        instrument_type: One of InstrumentType.
        current_price: Latest known price per unit, or None if never set.
        price_updated_at: When the price was last set.

    """

    symbol: str
    name: str
    instrument_type: InstrumentType = InstrumentType.STOCK
    current_price: Money | None = None
    price_updated_at: datetime | None = None

    @property
    def has_price(self) -> bool:
        return self.current_price is not None


@dataclass(frozen=True)
class Account:
    """A brokerage account that holds instruments."""

    account_id: str
    name: str
    broker_name: str
    account_type: AccountType = AccountType.NORMAL
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Reject blank names, mirroring the storage constraints."""
        if not self.name.strip():
            msg = "Account name must not be blank"
            raise ValueError(msg)
        if not self.broker_name.strip():
            msg = "Broker name must not be blank"
            raise ValueError(msg)


@dataclass(frozen=True)
class Holding:
    """One account's contribution to a position.

    Attributes:
        account_id: Owning account.
        instrument_symbol: Held instrument.
        quantity: Units held, strictly positive.
        cost_basis: Average price paid per unit, strictly positive.
        created_at: When the first purchase for this account was recorded.
        updated_at: When the holding last changed.

    """

    account_id: str
    instrument_symbol: str
    quantity: Decimal
    cost_basis: Money
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Enforce strictly positive quantity and cost basis."""
        if self.quantity <= ZERO:
            msg = (
                f"Holding {self.instrument_symbol}/{self.account_id}: "
                f"quantity must be positive, got {self.quantity}"
            )
            raise InvalidHoldingError(msg)
        if not self.cost_basis.is_positive():
            msg = (
                f"Holding {self.instrument_symbol}/{self.account_id}: "
                f"cost basis must be positive, got {self.cost_basis}"
            )
            raise InvalidHoldingError(msg)

    @property
    def invested_amount(self) -> Money:
        return self.cost_basis * self.quantity


@dataclass(frozen=True)
class Position:
    """Aggregated holding of one instrument across all accounts.

    ``total_quantity`` and ``avg_cost_basis`` are derived from ``holdings``
    in ``from_holdings``; build positions through it rather than the
    constructor.

    Attributes:
        instrument_symbol: Aggregate identity.
        holdings: Per-account holdings ordered by account_id.
        total_quantity: Sum of holding quantities.
        avg_cost_basis: Quantity-weighted average cost, 4 dp.
        version: Bumped on every change; used for compare-and-swap writes.
        created_at: When the position was first created.
        updated_at: When the holding set last changed.

    """

    instrument_symbol: str
    holdings: tuple[Holding, ...]
    total_quantity: Decimal
    avg_cost_basis: Money
    version: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_holdings(
        cls,
        instrument_symbol: str,
        holdings: list[Holding] | tuple[Holding, ...],
        *,
        version: int = 0,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> Position:
        """Build a position, recomputing totals from scratch.

        Args:
            instrument_symbol: Symbol all holdings must share.
            holdings: At least one holding.
            version: Aggregate version.
            created_at: Creation time; defaults to the earliest holding.
            updated_at: Last change; defaults to the latest holding change.

        Returns:
            A consistent Position.

        Raises:
            InvalidHoldingError: If holdings are empty, belong to another
                symbol, repeat an account, or mix currencies.

        """
        if not holdings:
            msg = f"Position {instrument_symbol} must have at least one holding"
            raise InvalidHoldingError(msg)

        ordered = tuple(sorted(holdings, key=lambda h: h.account_id))
        accounts = [h.account_id for h in ordered]
        if len(set(accounts)) != len(accounts):
            msg = f"Position {instrument_symbol} has duplicate account holdings"
            raise InvalidHoldingError(msg)
        for holding in ordered:
            if holding.instrument_symbol != instrument_symbol:
                msg = (
                    f"Holding for {holding.instrument_symbol} cannot belong "
                    f"to position {instrument_symbol}"
                )
                raise InvalidHoldingError(msg)

        currencies = {h.cost_basis.currency for h in ordered}
        if len(currencies) != 1:
            msg = f"Position {instrument_symbol} mixes currencies {sorted(currencies)}"
            raise InvalidHoldingError(msg)
        currency = currencies.pop()

        total_quantity = sum((h.quantity for h in ordered), ZERO)
        total_cost = sum((h.quantity * h.cost_basis.amount for h in ordered), ZERO)
        avg_cost = Money(total_cost / total_quantity, currency).quantized()

        return cls(
            instrument_symbol=instrument_symbol,
            holdings=ordered,
            total_quantity=quantize_quantity(total_quantity),
            avg_cost_basis=avg_cost,
            version=version,
            created_at=created_at or min(h.created_at for h in ordered),
            updated_at=updated_at or max(h.updated_at for h in ordered),
        )

    @property
    def currency(self) -> str:
        return self.avg_cost_basis.currency

    def holding_for(self, account_id: str) -> Holding | None:
        """Return the holding for an account, if any."""
        for holding in self.holdings:
            if holding.account_id == account_id:
                return holding
        return None
