"""Validation of inbound position records.

Records come from manual entry (the position-creation command) or from a
batch import. ``validate`` checks every field and raises one
``ValidationError`` listing all violations, so the caller can report
them together rather than one per round trip.

Field names are matched through an alias table, so both the command's
camelCase keys (``instrumentSymbol``) and CSV-style keys (``symbol``,
``ticker``) are accepted. Errors name the key the caller actually used.

Duplicate prevention is a pure predicate: a holding imported in batch B
for account A and instrument I is identified by ``ImportKey(B, A, I)``,
and the caller supplies the lookup of keys that already exist.

"""

from __future__ import annotations

from collections.abc import Callable, Container, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from portfoliotracker.config import DEFAULT_CURRENCY
from portfoliotracker.errors import FieldError, ValidationError
from portfoliotracker.money import ZERO, Money, fractional_digits, to_decimal
from portfoliotracker.portfolio.models import InstrumentType

_MAX_QUANTITY_DIGITS = 8
_MAX_PRICE_DIGITS = 4

_FIELD_ALIASES: dict[str, list[str]] = {
    "instrument_symbol": ["instrument_symbol", "instrumentSymbol", "symbol", "ticker", "isin"],
    "instrument_name": ["instrument_name", "instrumentName", "name", "instrument"],
    "instrument_type": ["instrument_type", "instrumentType", "type"],
    "account_id": ["account_id", "accountId", "account"],
    "quantity": ["quantity", "qty", "shares", "units"],
    "average_cost": ["average_cost", "averageCost", "avg_cost", "cost_basis", "costBasis"],
    "current_price": ["current_price", "currentPrice", "price"],
}

# Names reported for fields the record did not supply at all
_WIRE_NAMES: dict[str, str] = {
    "instrument_symbol": "instrumentSymbol",
    "instrument_name": "instrumentName",
    "instrument_type": "instrumentType",
    "account_id": "accountId",
    "quantity": "quantity",
    "average_cost": "averageCost",
    "current_price": "currentPrice",
}


@dataclass(frozen=True)
class ImportKey:
    """Identity of an imported holding: (batch, account, instrument)."""

    batch_id: str
    account_id: str
    instrument_symbol: str


AlreadyImported = Callable[[ImportKey], bool] | Container[ImportKey]


@dataclass(frozen=True)
class ValidatedPosition:
    """A normalized record, safe to hand to the aggregator.

    Attributes:
        instrument_symbol: Upper-cased, stripped symbol.
        account_id: Account identifier.
        quantity: Positive quantity, at most 8 fractional digits.
        average_cost: Positive cost per unit, or None if not supplied.
        current_price: Positive price per unit, or None.
        instrument_name: Display name; defaults to the symbol.
        instrument_type: Instrument type, or None if not supplied.
        batch_id: Import batch, or None for manual entry.

    """

    instrument_symbol: str
    account_id: str
    quantity: Decimal
    average_cost: Money | None = None
    current_price: Money | None = None
    instrument_name: str = ""
    instrument_type: InstrumentType | None = None
    batch_id: str | None = None

    @property
    def needs_cost_entry(self) -> bool:
        """True if the record had no average cost and one must be entered."""
        return self.average_cost is None

    @property
    def import_key(self) -> ImportKey | None:
        if self.batch_id is None:
            return None
        return ImportKey(self.batch_id, self.account_id, self.instrument_symbol)


@dataclass
class BatchValidation:
    """Outcome of validating a batch of records."""

    accepted: list[ValidatedPosition] = field(default_factory=list)
    rejected: list[tuple[int, Mapping[str, Any], list[FieldError]]] = field(
        default_factory=list
    )


def is_duplicate(key: ImportKey, already_imported: AlreadyImported | None) -> bool:
    """Check whether an import key has been seen before.

    Args:
        key: Key to check.
        already_imported: Predicate or container of existing keys.
            None means nothing has been imported.

    Returns:
        True if the key is already imported.

    """
    if already_imported is None:
        return False
    if callable(already_imported):
        return bool(already_imported(key))
    return key in already_imported


def _lookup(record: Mapping[str, Any], canonical: str) -> tuple[str, Any]:
    """Find a field by any of its aliases.

    Returns:
        (key used by the record, value); the wire name and None if the
        field is absent, or the key used and None if it is blank.

    """
    for alias in _FIELD_ALIASES[canonical]:
        if alias in record:
            value = record[alias]
            if value is None or (isinstance(value, str) and not value.strip()):
                return alias, None
            return alias, value
    return _WIRE_NAMES[canonical], None


def _parse_text(
    record: Mapping[str, Any],
    canonical: str,
    errors: list[FieldError],
    *,
    required: bool,
) -> str | None:
    key, value = _lookup(record, canonical)
    if value is None:
        if required:
            errors.append(FieldError(key, "is required"))
        return None
    return str(value).strip()


def _parse_positive(
    record: Mapping[str, Any],
    canonical: str,
    errors: list[FieldError],
    *,
    required: bool,
    max_digits: int,
) -> Decimal | None:
    """Parse a strictly positive decimal field, recording any violation."""
    key, value = _lookup(record, canonical)
    if value is None:
        if required:
            errors.append(FieldError(key, "is required"))
        return None

    try:
        number = to_decimal(value)
    except ValueError:
        errors.append(FieldError(key, "must be a number", value))
        return None

    if number <= ZERO:
        errors.append(FieldError(key, "must be greater than zero", value))
        return None
    if fractional_digits(number) > max_digits:
        errors.append(
            FieldError(key, f"must have at most {max_digits} decimal places", value)
        )
        return None
    return number


def _parse_type(
    record: Mapping[str, Any],
    errors: list[FieldError],
) -> InstrumentType | None:
    key, value = _lookup(record, "instrument_type")
    if value is None:
        return None
    if isinstance(value, InstrumentType):
        return value
    try:
        return InstrumentType(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(t.value for t in InstrumentType)
        errors.append(FieldError(key, f"must be one of {allowed}", value))
        return None


def validate(
    record: Mapping[str, Any],
    *,
    batch_id: str | None = None,
    already_imported: AlreadyImported | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> ValidatedPosition:
    """Validate and normalize one position record.

    Args:
        record: Raw field mapping from manual entry or an import row.
        batch_id: Import batch the record belongs to, if any. Duplicate
            checks only apply to batch imports.
        already_imported: Lookup of existing import keys.
        currency: Currency for cost and price amounts.

    Returns:
        The normalized ValidatedPosition.

    Raises:
        ValidationError: With one FieldError per violation.

    """
    errors: list[FieldError] = []

    symbol = _parse_text(record, "instrument_symbol", errors, required=True)
    account_id = _parse_text(record, "account_id", errors, required=True)
    name = _parse_text(record, "instrument_name", errors, required=False)
    instrument_type = _parse_type(record, errors)
    quantity = _parse_positive(
        record, "quantity", errors, required=True, max_digits=_MAX_QUANTITY_DIGITS
    )
    average_cost = _parse_positive(
        record, "average_cost", errors, required=False, max_digits=_MAX_PRICE_DIGITS
    )
    current_price = _parse_positive(
        record, "current_price", errors, required=False, max_digits=_MAX_PRICE_DIGITS
    )

    if symbol is not None:
        symbol = symbol.upper()

    if batch_id is not None and symbol and account_id:
        key = ImportKey(batch_id, account_id, symbol)
        if is_duplicate(key, already_imported):
            field_name, _ = _lookup(record, "instrument_symbol")
            errors.append(
                FieldError(
                    field_name,
                    f"already imported for account {account_id} in batch {batch_id}",
                    symbol,
                )
            )

    if errors or symbol is None or account_id is None or quantity is None:
        raise ValidationError(errors)

    return ValidatedPosition(
        instrument_symbol=symbol,
        account_id=account_id,
        quantity=quantity,
        average_cost=None if average_cost is None else Money(average_cost, currency),
        current_price=None if current_price is None else Money(current_price, currency),
        instrument_name=name or symbol,
        instrument_type=instrument_type,
        batch_id=batch_id,
    )


def validate_batch(
    records: Iterable[Mapping[str, Any]],
    batch_id: str,
    already_imported: AlreadyImported | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> BatchValidation:
    """Validate a batch, rejecting repeats of a key within the batch too.

    Args:
        records: Raw records in file order.
        batch_id: Identifier of this import batch.
        already_imported: Lookup of keys from earlier imports.
        currency: Currency for cost and price amounts.

    Returns:
        BatchValidation with accepted records and, for each rejected one,
        its 1-based position, the raw record, and its field errors.

    """
    outcome = BatchValidation()
    seen: set[ImportKey] = set()

    def _imported(key: ImportKey) -> bool:
        return key in seen or is_duplicate(key, already_imported)

    for index, record in enumerate(records, start=1):
        try:
            validated = validate(
                record,
                batch_id=batch_id,
                already_imported=_imported,
                currency=currency,
            )
        except ValidationError as exc:
            outcome.rejected.append((index, record, exc.errors))
            continue
        if validated.import_key is not None:
            seen.add(validated.import_key)
        outcome.accepted.append(validated)

    return outcome
