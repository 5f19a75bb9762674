"""Manual and batch price updates for instruments.

Prices are validated the same way as import values: positive, at most
four decimal places. A batch never fails as a whole; each symbol either
updates or is reported with the reason it was skipped.

"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from portfoliotracker.config import DEFAULT_CURRENCY
from portfoliotracker.errors import FieldError, ValidationError
from portfoliotracker.money import ZERO, Money, fractional_digits, to_decimal
from portfoliotracker.portfolio.models import Instrument, utc_now

logger = logging.getLogger(__name__)

_MAX_PRICE_DIGITS = 4


@dataclass
class PriceBatchResult:
    """Outcome of a batch price update.

    Attributes:
        updated: Instruments with their new price, by symbol.
        failures: Symbol to reason for every price that was not applied.

    """

    updated: dict[str, Instrument] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": sorted(self.updated),
            "failures": [
                {"symbol": symbol, "reason": reason}
                for symbol, reason in sorted(self.failures.items())
            ],
        }


def parse_price(raw: Any, currency: str = DEFAULT_CURRENCY) -> Money:
    """Validate a raw price value.

    Raises:
        ValidationError: On field ``newPrice`` if the value is missing,
            not a number, not positive, or has more than 4 decimals.

    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError([FieldError("newPrice", "is required")])
    try:
        price = to_decimal(raw)
    except ValueError:
        raise ValidationError([FieldError("newPrice", "must be a number", raw)]) from None
    if price <= ZERO:
        raise ValidationError([FieldError("newPrice", "must be greater than zero", raw)])
    if fractional_digits(price) > _MAX_PRICE_DIGITS:
        raise ValidationError(
            [
                FieldError(
                    "newPrice",
                    f"must have at most {_MAX_PRICE_DIGITS} decimal places",
                    raw,
                )
            ]
        )
    return Money(price, currency)


def update_price(
    instrument: Instrument,
    new_price: Any,
    at: datetime | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> Instrument:
    """Return ``instrument`` with a new current price and timestamp.

    Args:
        instrument: Instrument to update.
        new_price: Raw price (str, Decimal, int or float).
        at: Update time; defaults to now (UTC).
        currency: Price currency.

    Returns:
        A new Instrument; the input is not modified.

    Raises:
        ValidationError: If the price is invalid.

    """
    price = parse_price(new_price, currency)
    updated = dataclasses.replace(
        instrument,
        current_price=price,
        price_updated_at=at or utc_now(),
    )
    logger.info("Price for %s set to %s", instrument.symbol, price)
    return updated


def apply_price_batch(
    instruments: Mapping[str, Instrument],
    prices: Mapping[str, Any],
    at: datetime | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> PriceBatchResult:
    """Apply many prices, collecting per-symbol failures.

    Args:
        instruments: Known instruments by symbol.
        prices: Symbol to raw price.
        at: Update time shared by the whole batch.
        currency: Price currency.

    Returns:
        PriceBatchResult. Unknown symbols and invalid prices are listed
        in ``failures``; the rest are in ``updated``.

    """
    at = at or utc_now()
    result = PriceBatchResult()
    for raw_symbol, raw_price in prices.items():
        symbol = raw_symbol.strip().upper()
        instrument = instruments.get(symbol)
        if instrument is None:
            result.failures[symbol] = "unknown instrument"
            continue
        try:
            result.updated[symbol] = update_price(instrument, raw_price, at, currency)
        except ValidationError as exc:
            result.failures[symbol] = "; ".join(
                f"{e.field} {e.message}" for e in exc.errors
            )

    if result.failures:
        logger.warning(
            "Batch price update skipped %d symbols: %s",
            len(result.failures),
            ", ".join(sorted(result.failures)),
        )
    logger.info("Batch price update applied %d prices", len(result.updated))
    return result
