"""Tests for position record validation and duplicate prevention."""

from __future__ import annotations

from decimal import Decimal

import pytest

from portfoliotracker.errors import ValidationError
from portfoliotracker.ingest.validation import (
    ImportKey,
    is_duplicate,
    validate,
    validate_batch,
)
from portfoliotracker.money import Money
from portfoliotracker.portfolio.models import InstrumentType


def _record(**overrides):
    record = {
        "instrumentName": "CD Projekt",
        "instrumentSymbol": "cdr",
        "instrumentType": "stock",
        "accountId": "ike",
        "quantity": "50",
        "averageCost": "500",
    }
    record.update(overrides)
    return record


def _fields(exc_info) -> list[str]:
    return [e.field for e in exc_info.value.errors]


class TestValidate:
    """Tests for single-record validation."""

    def test_valid_record_is_normalized(self) -> None:
        validated = validate(_record())
        assert validated.instrument_symbol == "CDR"
        assert validated.instrument_type is InstrumentType.STOCK
        assert validated.quantity == Decimal("50")
        assert validated.average_cost == Money.of("500", "PLN")
        assert not validated.needs_cost_entry
        assert validated.import_key is None

    def test_csv_style_aliases(self) -> None:
        validated = validate({"symbol": "PKN", "account": "x", "qty": "1.5", "price": "60"})
        assert validated.instrument_symbol == "PKN"
        assert validated.instrument_name == "PKN"
        assert validated.current_price == Money.of("60", "PLN")

    def test_missing_cost_needs_entry(self) -> None:
        validated = validate(_record(averageCost=None))
        assert validated.needs_cost_entry

    @pytest.mark.parametrize(
        ("value", "message"),
        [
            ("abc", "must be a number"),
            ("0", "must be greater than zero"),
            ("-3", "must be greater than zero"),
            ("1.123456789", "at most 8 decimal places"),
        ],
    )
    def test_bad_quantity(self, value, message) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate(_record(quantity=value))
        (error,) = exc_info.value.errors
        assert error.field == "quantity"
        assert message in error.message
        assert error.rejected_value == value

    def test_cost_limited_to_four_places(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate(_record(averageCost="1.00001"))
        assert _fields(exc_info) == ["averageCost"]

    def test_all_errors_collected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate(
                {
                    "instrumentSymbol": " ",
                    "quantity": "x",
                    "averageCost": "-1",
                    "instrumentType": "crypto",
                }
            )
        assert sorted(_fields(exc_info)) == [
            "accountId",
            "averageCost",
            "instrumentSymbol",
            "instrumentType",
            "quantity",
        ]

    def test_duplicate_in_batch_rejected(self) -> None:
        seen = {ImportKey("b1", "ike", "CDR")}
        with pytest.raises(ValidationError) as exc_info:
            validate(_record(), batch_id="b1", already_imported=seen)
        (error,) = exc_info.value.errors
        assert error.field == "instrumentSymbol"
        assert "already imported" in error.message

    def test_same_instrument_other_account_accepted(self) -> None:
        seen = {ImportKey("b1", "ike", "CDR")}
        validated = validate(_record(accountId="normal"), batch_id="b1", already_imported=seen)
        assert validated.import_key == ImportKey("b1", "normal", "CDR")


class TestIsDuplicate:
    def test_none_lookup(self) -> None:
        assert not is_duplicate(ImportKey("b", "a", "X"), None)

    def test_callable_lookup(self) -> None:
        key = ImportKey("b", "a", "X")
        assert is_duplicate(key, lambda k: k == key)
        assert not is_duplicate(ImportKey("b", "a", "Y"), lambda k: k == key)


class TestValidateBatch:
    """Tests for whole-batch validation."""

    def test_rejects_repeat_within_batch(self) -> None:
        records = [_record(), _record(quantity="10"), _record(accountId="normal")]
        outcome = validate_batch(records, "b1")

        assert [v.account_id for v in outcome.accepted] == ["ike", "normal"]
        ((index, _raw, errors),) = outcome.rejected
        assert index == 2
        assert errors[0].field == "instrumentSymbol"

    def test_rejects_previously_imported(self) -> None:
        outcome = validate_batch([_record()], "b1", {ImportKey("b1", "ike", "CDR")})
        assert outcome.accepted == []
        assert len(outcome.rejected) == 1

    def test_invalid_record_does_not_stop_batch(self) -> None:
        outcome = validate_batch([_record(quantity="0"), _record(instrumentSymbol="PKN")], "b2")
        assert [v.instrument_symbol for v in outcome.accepted] == ["PKN"]
        assert outcome.rejected[0][0] == 1
