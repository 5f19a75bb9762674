"""Tests for the portfolio service."""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest

from portfoliotracker.errors import NotFoundError, ValidationError
from portfoliotracker.analysis.metrics import MetricUnavailable
from portfoliotracker.money import Money
from portfoliotracker.portfolio.reconciliation import PositionSnapshot


def _pln(amount: str) -> Money:
    return Money.of(amount, "PLN")


def _record(account: str, qty: str, cost: str | None = "100", symbol: str = "CDR") -> dict:
    record = {
        "instrumentSymbol": symbol,
        "instrumentName": "CD Projekt",
        "accountId": account,
        "quantity": qty,
    }
    if cost is not None:
        record["averageCost"] = cost
    return record


@pytest.fixture
def accounts(service) -> None:
    service.open_account("IKE", "mBank", "IKE", account_id="ike")
    service.open_account("Main", "XTB", account_id="normal")


class TestAccounts:
    """Tests for account management."""

    def test_open_and_list(self, service) -> None:
        account = service.open_account(" IKE ", "mBank", "ike", account_id="a1")
        assert account.name == "IKE"
        assert account.account_type.value == "IKE"
        assert service.list_accounts() == [account]

    def test_generated_id(self, service) -> None:
        account = service.open_account("Main", "XTB")
        assert len(account.account_id) == 12

    def test_invalid_fields_reported_together(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.open_account("", " ", "CRYPTO")
        fields = {e.field for e in exc_info.value.errors}
        assert fields == {"name", "brokerName", "accountType"}

    def test_duplicate_id_rejected(self, service, accounts) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.open_account("Again", "mBank", account_id="ike")
        assert exc_info.value.errors[0].field == "accountId"


class TestAddPosition:
    """Tests for manual entry and aggregation across accounts."""

    def test_aggregates_across_accounts(self, service, accounts) -> None:
        service.add_position(_record("ike", "50", "500"))
        outcome = service.add_position(_record("normal", "30", "520"))

        position = outcome.position
        assert position.total_quantity == Decimal(80)
        assert position.avg_cost_basis == _pln("507.50")
        assert position.version == 2

    def test_same_account_merges(self, service, accounts) -> None:
        service.add_position(_record("ike", "10", "100"))
        position = service.add_position(_record("ike", "10", "200")).position
        (holding,) = position.holdings
        assert holding.quantity == Decimal(20)
        assert position.avg_cost_basis == _pln("150")

    def test_unknown_account_rejected(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.add_position(_record("ghost", "1"))
        assert exc_info.value.errors[0].field == "accountId"

    def test_missing_cost_goes_pending(self, service, accounts) -> None:
        outcome = service.add_position(_record("ike", "5", cost=None))
        assert outcome.position is None

        (entry,) = service.pending_cost_entries()
        assert entry["id"] == outcome.pending_entry_id
        assert service.list_positions() == []

    def test_enter_cost_applies_pending(self, service, accounts) -> None:
        outcome = service.add_position(_record("ike", "5", cost=None))
        position = service.enter_cost(outcome.pending_entry_id, "42.5")

        assert position.total_quantity == Decimal(5)
        assert position.avg_cost_basis == _pln("42.5")
        assert service.pending_cost_entries() == []

    def test_enter_cost_rejects_bad_cost(self, service, accounts) -> None:
        outcome = service.add_position(_record("ike", "5", cost=None))
        with pytest.raises(ValidationError):
            service.enter_cost(outcome.pending_entry_id, "-1")
        assert len(service.pending_cost_entries()) == 1

    def test_enter_cost_unknown_entry(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.enter_cost("missing", "1")

    def test_enter_cost_concurrent_calls_apply_once(self, service, accounts) -> None:
        outcome = service.add_position(_record("ike", "10", cost=None))
        results: list[object] = []

        def _enter() -> None:
            try:
                results.append(service.enter_cost(outcome.pending_entry_id, "100"))
            except NotFoundError as exc:
                results.append(exc)

        threads = [threading.Thread(target=_enter) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(isinstance(r, NotFoundError) for r in results) == 1
        (view,) = service.list_positions()
        assert view.quantity == Decimal(10)


class TestImport:
    """Tests for batch imports."""

    def test_duplicates_within_and_across_batches(self, service, accounts) -> None:
        report = service.import_records(
            [_record("ike", "1"), _record("ike", "1"), _record("normal", "2")],
            batch_id="b1",
        )
        assert len(report.applied) == 2
        assert [row for row, _ in report.rejected] == [2]

        again = service.import_records([_record("ike", "1")], batch_id="b1")
        assert again.applied == []
        assert "already imported" in again.rejected[0][1][0].message

        (view,) = service.list_positions()
        assert view.quantity == Decimal(3)

    def test_concurrent_imports_of_same_batch(self, service, accounts) -> None:
        reports = []

        def _import() -> None:
            reports.append(service.import_records([_record("ike", "4")], batch_id="b2"))

        threads = [threading.Thread(target=_import) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(len(r.applied) for r in reports) == 1
        assert sum(len(r.rejected) for r in reports) == 1
        (view,) = service.list_positions()
        assert view.quantity == Decimal(4)

    def test_bad_rows_do_not_abort_batch(self, service, accounts) -> None:
        report = service.import_records(
            [
                _record("ike", "abc"),
                _record("ike", "2", cost=None, symbol="PKN"),
                _record("ike", "1"),
            ]
        )
        assert len(report.rejected) == 1
        assert len(report.pending) == 1
        assert len(report.applied) == 1
        assert report.to_dict()["rejected"][0]["row"] == 1

    def test_import_csv(self, service, accounts) -> None:
        csv_content = (
            "Symbol,Name,Quantity,Average Cost,Current Price\n"
            "CDR,CD Projekt,10,\"1,000.00\",1100\n"
        )
        report = service.import_csv(csv_content=csv_content, account_id="ike", batch_id="x")
        assert report.batch_id == "x"
        assert len(report.applied) == 1

        summary = service.portfolio_summary(as_of=date(2030, 1, 1))
        assert summary.total_current_value == _pln("11000")
        assert summary.total_profit_loss == _pln("1000")


class TestViews:
    """Tests for position listings and the portfolio summary."""

    def test_unpriced_positions_sort_last(self, service, accounts) -> None:
        service.add_position(_record("ike", "1", "10", symbol="AAA"))
        service.add_position(_record("ike", "1", "10", symbol="BBB"))
        service.update_price("BBB", "12")

        views = service.list_positions(sort_by="current_value", descending=False)
        assert [v.instrument_symbol for v in views] == ["BBB", "AAA"]

    def test_bad_sort_key(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.list_positions(sort_by="colour")
        assert exc_info.value.errors[0].field == "sortBy"

    def test_position_detail(self, service, accounts) -> None:
        service.add_position(_record("ike", "50", "500"))
        service.add_position(_record("normal", "30", "520"))
        service.update_price("cdr", "550")

        detail = service.position_detail("cdr")
        assert detail.view.current_value == _pln("44000")
        assert [a.account_name for a in detail.accounts] == ["IKE", "Main"]
        assert detail.version == 2

    def test_position_detail_missing(self, service) -> None:
        with pytest.raises(NotFoundError, match="Position not found"):
            service.position_detail("CDR")

    def test_summary_unpriced(self, service, accounts) -> None:
        service.add_position(_record("ike", "2", "10"))
        summary = service.portfolio_summary()
        assert isinstance(summary.total_current_value, MetricUnavailable)
        assert summary.total_invested_amount == _pln("20")

    def test_empty_summary(self, service) -> None:
        summary = service.portfolio_summary()
        assert summary.positions_count == 0
        assert summary.total_return_percentage == Decimal("0.00")


class TestPrices:
    """Tests for manual, batch and fetched price updates."""

    def test_update_unknown_instrument(self, service) -> None:
        with pytest.raises(NotFoundError, match="Instrument not found"):
            service.update_price("CDR", "1")

    def test_update_invalid_price_keeps_old(self, service, accounts) -> None:
        service.add_position(_record("ike", "1"))
        service.update_price("CDR", "10")
        with pytest.raises(ValidationError):
            service.update_price("CDR", "0")
        assert service.position_detail("CDR").current_price == _pln("10")

    def test_batch_persists_valid_prices(self, service, accounts) -> None:
        service.add_position(_record("ike", "1"))
        result = service.update_prices({"CDR": "101", "XYZ": "5"})
        assert list(result.updated) == ["CDR"]
        assert result.failures == {"XYZ": "unknown instrument"}
        assert service.position_detail("CDR").current_price == _pln("101")

    def test_update_prices_csv(self, service, accounts) -> None:
        service.add_position(_record("ike", "1"))
        result = service.update_prices_csv(csv_content="symbol,price\nCDR,99.5\n")
        assert list(result.updated) == ["CDR"]

    def test_refresh_reports_missing_data(self, service, accounts) -> None:
        service.add_position(_record("ike", "1", symbol="AAA"))
        service.add_position(_record("ike", "1", symbol="BBB"))
        with patch(
            "portfoliotracker.service.fetch_latest_prices",
            return_value={"AAA": Decimal("12.3400")},
        ) as fetch:
            result = service.refresh_prices()

        fetch.assert_called_once_with(["AAA", "BBB"])
        assert list(result.updated) == ["AAA"]
        assert result.failures == {"BBB": "no price data"}


class TestReconcile:
    """Tests for reconciliation runs and history."""

    def test_run_is_recorded(self, service, accounts) -> None:
        service.add_position(_record("ike", "80", "500"))
        service.update_price("CDR", "550")
        statement = {
            "CDR": PositionSnapshot("CDR", Decimal(80), _pln("44100")),
            "PKN": PositionSnapshot("PKN", Decimal(3)),
        }

        run = service.reconcile(statement)
        assert run.tolerance == Decimal("0.005")
        assert run.result.matches == ("CDR",)
        assert run.to_dict()["hasDiscrepancies"] is True

        (stored,) = service.reconciliation_history()
        assert stored["id"] == run.run_id
        assert stored["result"]["missingInSystem"][0]["symbol"] == "PKN"

    def test_explicit_tolerance(self, service, accounts) -> None:
        service.add_position(_record("ike", "1", "100"))
        service.update_price("CDR", "100")
        statement = {"CDR": PositionSnapshot("CDR", Decimal(1), _pln("90"))}

        assert service.reconcile(statement, "0.2").result.matches == ("CDR",)
        assert len(service.reconcile(statement, "0").result.value_mismatches) == 1

    @pytest.mark.parametrize("tolerance", ["abc", "-0.1"])
    def test_bad_tolerance(self, service, tolerance) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.reconcile({}, tolerance)
        assert exc_info.value.errors[0].field == "tolerance"

    def test_reconcile_csv(self, service, accounts) -> None:
        service.add_position(_record("ike", "2"))
        run = service.reconcile_csv(csv_content="Symbol,Quantity\ncdr,2\n")
        assert run.result.matches == ("CDR",)
        assert not run.result.has_discrepancies()

    def test_unreadable_statement_is_validation_error(self, service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.reconcile_csv(csv_content="Ticker,Value\nCDR,10\n")
        assert exc_info.value.errors[0].field == "csvContent"
