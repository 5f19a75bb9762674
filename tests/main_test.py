"""Tests for the request loop entry point (dispatch and message loop)."""

from __future__ import annotations

import json
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import pytest

from portfoliotracker.errors import (
    ConcurrentModificationError,
    FieldError,
    NotFoundError,
    ValidationError,
)
from portfoliotracker.main import _JsonEncoder, dispatch, error_envelope, main
from portfoliotracker.money import Money


def _run_loop(*lines: str, result=None, side_effect=None) -> list[dict]:
    stdin = StringIO("".join(line + "\n" for line in lines))
    stdout = StringIO()
    with (
        patch("sys.stdin", stdin),
        patch("sys.stdout", stdout),
        patch(
            "portfoliotracker.main.dispatch",
            return_value=result,
            side_effect=side_effect,
        ),
    ):
        main()
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


class TestDispatch:
    """Tests for the dispatch function."""

    def test_unknown_method_raises(self) -> None:
        with pytest.raises(NotFoundError, match=r"Unknown method: foo\.bar"):
            dispatch("foo.bar", {})

    def test_unknown_method_does_not_open_database(self) -> None:
        with (
            patch("portfoliotracker.main._default_service") as default,
            pytest.raises(NotFoundError),
        ):
            dispatch("nonexistent.method", {})
        default.assert_not_called()


class TestErrorEnvelope:
    """Tests for the error body and status mapping."""

    @pytest.mark.parametrize(
        ("exc", "status", "reason"),
        [
            (ValidationError([FieldError("quantity", "is required")]), 400, "Bad Request"),
            (NotFoundError("Position not found: CDR"), 404, "Not Found"),
            (ConcurrentModificationError("stale"), 409, "Conflict"),
            (RuntimeError("boom"), 500, "Internal Server Error"),
        ],
    )
    def test_status_mapping(self, exc, status, reason) -> None:
        envelope = error_envelope(exc, "positions.create")
        assert envelope["status"] == status
        assert envelope["error"] == reason
        assert envelope["path"] == "positions.create"
        assert envelope["traceId"]

    def test_validation_details(self) -> None:
        exc = ValidationError([FieldError("quantity", "must be a number", "abc")])
        (detail,) = error_envelope(exc, "positions.create")["details"]
        assert detail["field"] == "quantity"
        assert detail["message"] == "must be a number"


class TestJsonEncoder:
    def test_decimal_and_money(self) -> None:
        body = json.dumps(
            {"q": Decimal("1.50"), "v": Money.of("2", "PLN")}, cls=_JsonEncoder
        )
        assert json.loads(body) == {
            "q": "1.50",
            "v": {"amount": "2.0000", "currency": "PLN"},
        }


class TestMain:
    """Tests for the stdin/stdout message loop."""

    def test_valid_request_returns_response(self) -> None:
        request = json.dumps({"id": "1", "method": "accounts.list", "params": {}})
        (response,) = _run_loop(request, result={"status": "ok"})
        assert response == {"id": "1", "result": {"status": "ok"}}

    def test_invalid_json_returns_bad_request(self) -> None:
        (response,) = _run_loop("not valid json")
        assert response["id"] == "unknown"
        assert response["error"]["status"] == 400

    @pytest.mark.parametrize("line", ["[]", '"x"', "42"])
    def test_non_object_request_returns_bad_request(self, line: str) -> None:
        (response,) = _run_loop(line)
        assert response["id"] == "unknown"
        assert response["error"]["status"] == 400
        assert response["error"]["details"][0]["field"] == "request"

    def test_missing_method_returns_bad_request(self) -> None:
        (response,) = _run_loop(json.dumps({"id": "2"}))
        assert response["id"] == "2"
        assert response["error"]["details"][0]["field"] == "method"

    def test_empty_lines_are_skipped(self) -> None:
        request = json.dumps({"id": "3", "method": "accounts.list"})
        responses = _run_loop("", request, "   ", result=[])
        assert len(responses) == 1

    def test_not_found_is_404(self) -> None:
        request = json.dumps({"id": "4", "method": "positions.detail"})
        (response,) = _run_loop(request, side_effect=NotFoundError("Position not found"))
        assert response["error"]["status"] == 404
        assert response["error"]["message"] == "Position not found"

    def test_unexpected_error_is_500_and_logged(self, caplog) -> None:
        request = json.dumps({"id": "5", "method": "portfolio.summary"})
        (response,) = _run_loop(request, side_effect=RuntimeError("boom"))
        assert response["error"]["status"] == 500
        assert "Request 5 (portfolio.summary) failed" in caplog.text


class TestEndToEnd:
    """Requests handled against a real in-memory service."""

    def test_account_position_price_and_summary(self, service) -> None:
        dispatch(
            "accounts.open",
            {"name": "IKE", "brokerName": "mBank", "accountType": "IKE", "accountId": "ike"},
            service,
        )
        created = dispatch(
            "positions.create",
            {
                "instrumentSymbol": "cdr",
                "instrumentName": "CD Projekt",
                "accountId": "ike",
                "quantity": "80",
                "averageCost": "507.50",
            },
            service,
        )
        assert created["status"] == "applied"
        assert created["position"]["version"] == 1

        price = dispatch("prices.update", {"symbol": "CDR", "newPrice": "550"}, service)
        assert price["currentPrice"] == {"amount": "550.0000", "currency": "PLN"}

        summary = dispatch("portfolio.summary", {"asOf": "2030-01-01"}, service)
        assert summary["totalCurrentValue"]["amount"] == "44000.0000"
        assert summary["positionsCount"] == 1

        (row,) = dispatch("positions.list", {"sortBy": "quantity"}, service)
        assert row["instrumentSymbol"] == "CDR"

    def test_pending_cost_flow(self, service) -> None:
        service.open_account("IKE", "mBank", account_id="ike")
        pending = dispatch(
            "positions.create",
            {"instrumentSymbol": "PKN", "accountId": "ike", "quantity": "3"},
            service,
        )
        assert pending["status"] == "pending_cost"

        (entry,) = dispatch("positions.pending", {}, service)
        assert entry["id"] == pending["pendingId"]

        position = dispatch(
            "positions.enter_cost",
            {"pendingId": entry["id"], "averageCost": "60"},
            service,
        )
        assert Decimal(position["totalQuantity"]) == 3
        assert dispatch("positions.pending", {}, service) == []

    def test_reconciliation_lines_and_history(self, service) -> None:
        result = dispatch(
            "reconciliation.run",
            {"lines": [{"symbol": "cdr", "quantity": "5", "value": "100"}]},
            service,
        )
        assert result["hasDiscrepancies"] is True
        assert result["missingInSystem"] == [{"symbol": "CDR", "statementQty": "5"}]

        (run,) = dispatch("reconciliation.history", {"limit": 5}, service)
        assert run["id"] == result["id"]

    def test_repeated_statement_lines_are_summed(self, service) -> None:
        result = dispatch(
            "reconciliation.run",
            {"lines": [{"symbol": "CDR", "quantity": "50"}, {"symbol": "CDR", "quantity": "30"}]},
            service,
        )
        assert result["missingInSystem"] == [{"symbol": "CDR", "statementQty": "80"}]

    def test_bad_statement_line(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            dispatch("reconciliation.run", {"lines": [{"quantity": "x"}]}, service)
        assert exc_info.value.errors[0].field == "lines[0].symbol"

    def test_bad_as_of(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            dispatch("portfolio.summary", {"asOf": "yesterday"}, service)
        assert exc_info.value.errors[0].field == "asOf"
