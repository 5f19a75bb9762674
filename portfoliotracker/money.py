"""Exact fixed-precision money and quantity arithmetic.

Every monetary amount in the tracker is a ``Money`` value: a
``decimal.Decimal`` amount tagged with a currency code. Arithmetic between
two ``Money`` values is only allowed when the currencies agree, so a PLN
cost basis can never be silently added to a USD price.

Precision rules:
    - Costs, prices and totals are reported with 4 fractional digits.
    - Share quantities are reported with 8 fractional digits (fractional
      shares and bond units).
    - Intermediate results are never rounded; quantization happens only
      when a value is reported or stored.

"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from portfoliotracker.errors import CurrencyMismatchError

COST_PLACES = Decimal("0.0001")
QUANTITY_PLACES = Decimal("0.00000001")
PERCENT_PLACES = Decimal("0.01")

ZERO = Decimal(0)
HUNDRED = Decimal(100)


def to_decimal(value: Any) -> Decimal:
    """Convert a user-supplied number to ``Decimal`` without float drift.

    Floats are routed through ``str`` so that ``0.1`` becomes
    ``Decimal("0.1")`` rather than its binary approximation.

    Args:
        value: A Decimal, int, float, or numeric string.

    Returns:
        The value as a finite Decimal.

    Raises:
        ValueError: If the value is not a finite number.

    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        msg = f"Not a number: {value!r}"
        raise ValueError(msg)
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            msg = f"Not a number: {value!r}"
            raise ValueError(msg) from exc
    else:
        msg = f"Not a number: {value!r}"
        raise ValueError(msg)

    if not result.is_finite():
        msg = f"Not a finite number: {value!r}"
        raise ValueError(msg)
    return result


def quantize_quantity(quantity: Decimal) -> Decimal:
    """Round a share quantity to 8 fractional digits."""
    return quantity.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def quantize_percent(percent: Decimal) -> Decimal:
    """Round a percentage to 2 fractional digits."""
    return percent.quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)


def fractional_digits(value: Decimal) -> int:
    """Count the fractional digits of a decimal as written.

    ``Decimal("1.50")`` has 2, ``Decimal("100")`` has 0.
    """
    exponent = value.normalize().as_tuple().exponent
    if not isinstance(exponent, int):
        return 0
    return max(0, -exponent)


@dataclass(frozen=True)
class Money:
    """Immutable amount of money in a single currency.

    Attributes:
        amount: Exact decimal amount.
        currency: ISO-4217 currency code (e.g., "PLN").

    """

    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        """Coerce the amount to Decimal and normalize the currency code."""
        object.__setattr__(self, "amount", to_decimal(self.amount))
        code = (self.currency or "").strip().upper()
        if not code:
            msg = "currency must be a non-empty code"
            raise ValueError(msg)
        object.__setattr__(self, "currency", code)

    @classmethod
    def of(cls, amount: Any, currency: str) -> Money:
        """Build a Money from any numeric input."""
        return cls(to_decimal(amount), currency)

    @classmethod
    def zero(cls, currency: str) -> Money:
        """Return a zero amount in the given currency."""
        return cls(ZERO, currency)

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            msg = f"Cannot combine {self.currency} with {other.currency}"
            raise CurrencyMismatchError(msg)

    def __add__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.amount, self.currency)

    def __mul__(self, factor: Decimal | int) -> Money:
        if isinstance(factor, Money):
            msg = "Cannot multiply Money by Money"
            raise TypeError(msg)
        return Money(self.amount * to_decimal(factor), self.currency)

    __rmul__ = __mul__

    def __truediv__(self, divisor: Decimal | int) -> Money:
        if isinstance(divisor, Money):
            msg = "Use ratio() to divide Money by Money"
            raise TypeError(msg)
        return Money(self.amount / to_decimal(divisor), self.currency)

    def ratio(self, other: Money) -> Decimal:
        """Divide by another amount of the same currency.

        Raises:
            CurrencyMismatchError: If currencies differ.
            ZeroDivisionError: If ``other`` is zero.

        """
        self._check_currency(other)
        if other.amount == ZERO:
            msg = "Cannot divide by a zero amount"
            raise ZeroDivisionError(msg)
        return self.amount / other.amount

    def __lt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_positive(self) -> bool:
        return self.amount > ZERO

    def is_zero(self) -> bool:
        return self.amount == ZERO

    def quantized(self) -> Money:
        """Round the amount to 4 fractional digits (half-up)."""
        return Money(
            self.amount.quantize(COST_PLACES, rounding=ROUND_HALF_UP),
            self.currency,
        )

    def to_dict(self) -> dict[str, str]:
        """Serialize with the amount as a string to keep it exact."""
        return {"amount": str(self.quantized().amount), "currency": self.currency}

    def __str__(self) -> str:
        return f"{self.quantized().amount} {self.currency}"


def sum_money(values: list[Money], currency: str) -> Money:
    """Sum Money values, returning zero in ``currency`` for an empty list."""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
