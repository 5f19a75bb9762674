"""Tests for XIRR and cash-flow construction."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from portfoliotracker.analysis.metrics import MetricUnavailable
from portfoliotracker.analysis.returns import (
    CashFlowEvent,
    compute_xirr,
    portfolio_cash_flows,
    portfolio_xirr,
    position_cash_flows,
    position_xirr,
    xirr,
)
from portfoliotracker.money import Money
from portfoliotracker.portfolio.aggregator import apply_holding
from portfoliotracker.portfolio.models import Instrument


def _flow(day: date, amount: str) -> CashFlowEvent:
    return CashFlowEvent(day, Decimal(amount))


class TestXirr:
    """Tests for the XIRR solver."""

    def test_eight_percent_over_one_year(self) -> None:
        rate = xirr([_flow(date(2023, 1, 1), "-100000"), _flow(date(2024, 1, 1), "108000")])
        # 2023 has 365 days, so one period is exactly one year
        assert rate == pytest.approx(0.08, abs=1e-6)

    def test_loss(self) -> None:
        rate = xirr([_flow(date(2023, 1, 1), "-1000"), _flow(date(2024, 1, 1), "950")])
        assert rate == pytest.approx(-0.05, abs=1e-6)

    def test_flows_in_any_order(self) -> None:
        flows = [
            _flow(date(2024, 1, 1), "108000"),
            _flow(date(2023, 1, 1), "-100000"),
        ]
        assert xirr(flows) == pytest.approx(0.08, abs=1e-6)

    def test_multiple_purchases(self) -> None:
        flows = [
            _flow(date(2022, 1, 1), "-1000"),
            _flow(date(2023, 1, 1), "-1000"),
            _flow(date(2024, 1, 1), "2310"),
        ]
        # 1000 * 1.1^2 + 1000 * 1.1 = 2310
        assert xirr(flows) == pytest.approx(0.10, abs=1e-4)

    def test_large_amounts_converge(self) -> None:
        flows = [
            _flow(date(2020, 3, 15), "-250000000"),
            _flow(date(2024, 9, 30), "410000000"),
        ]
        rate = xirr(flows)
        assert isinstance(rate, float)
        assert 0.1 < rate < 0.13

    def test_single_flow_unavailable(self) -> None:
        result = xirr([_flow(date(2023, 1, 1), "-100")])
        assert isinstance(result, MetricUnavailable)

    def test_no_sign_change_unavailable(self) -> None:
        result = xirr([_flow(date(2023, 1, 1), "-100"), _flow(date(2024, 1, 1), "-50")])
        assert isinstance(result, MetricUnavailable)
        assert "sign" in result.reason

    def test_same_day_unavailable(self) -> None:
        day = date(2023, 1, 1)
        result = xirr([_flow(day, "-100"), _flow(day, "110")])
        assert isinstance(result, MetricUnavailable)

    def test_total_loss_unavailable(self) -> None:
        # A near-total loss has its root below the search bracket
        result = xirr([_flow(date(2023, 1, 1), "-100000"), _flow(date(2024, 1, 1), "0.001")])
        assert isinstance(result, MetricUnavailable)


class TestComputeXirr:
    def test_appends_terminal_value(self) -> None:
        rate = compute_xirr(
            [_flow(date(2023, 1, 1), "-100000")],
            Money.of("108000", "PLN"),
            date(2024, 1, 1),
        )
        assert rate == pytest.approx(0.08, abs=1e-6)

    def test_unavailable_value_passes_through(self) -> None:
        pending = MetricUnavailable("price pending")
        assert compute_xirr([], pending, date(2024, 1, 1)) is pending


class TestCashFlows:
    """Tests for deriving flows from positions."""

    def test_one_outflow_per_holding(self, cdr_position, jan_2023) -> None:
        flows = position_cash_flows(cdr_position)
        assert [f.date for f in flows] == [jan_2023.date(), jan_2023.date()]
        assert sum(f.amount for f in flows) == Decimal("-40600")

    def test_portfolio_flows_are_chronological(self) -> None:
        late = datetime(2024, 1, 1, tzinfo=UTC)
        early = datetime(2022, 1, 1, tzinfo=UTC)
        a = apply_holding(None, "A", "x", "1", Money.of("10", "PLN"), at=late)
        b = apply_holding(None, "B", "x", "1", Money.of("20", "PLN"), at=early)
        flows = portfolio_cash_flows([a, b])
        assert [f.date for f in flows] == [early.date(), late.date()]


class TestPositionAndPortfolioXirr:
    def test_position_xirr(self) -> None:
        bought = datetime(2023, 1, 1, tzinfo=UTC)
        position = apply_holding(None, "X", "a", "1000", Money.of("100", "PLN"), at=bought)
        rate = position_xirr(position, Money.of("108", "PLN"), date(2024, 1, 1))
        assert rate == pytest.approx(0.08, abs=1e-6)

    def test_position_without_price(self, cdr_position) -> None:
        assert isinstance(
            position_xirr(cdr_position, None, date(2024, 1, 1)), MetricUnavailable
        )

    def test_empty_portfolio(self) -> None:
        result = portfolio_xirr([], {}, date(2024, 1, 1))
        assert isinstance(result, MetricUnavailable)

    def test_portfolio_with_unpriced_position(self, cdr_position) -> None:
        instruments = {"CDR": Instrument("CDR", "CD Projekt")}
        result = portfolio_xirr([cdr_position], instruments, date(2024, 1, 1))
        assert isinstance(result, MetricUnavailable)

    def test_portfolio_xirr(self) -> None:
        bought = datetime(2023, 1, 1, tzinfo=UTC)
        a = apply_holding(None, "A", "x", "10", Money.of("100", "PLN"), at=bought)
        b = apply_holding(None, "B", "x", "10", Money.of("100", "PLN"), at=bought)
        instruments = {
            "A": Instrument("A", "A", current_price=Money.of("110", "PLN")),
            "B": Instrument("B", "B", current_price=Money.of("106", "PLN")),
        }
        rate = portfolio_xirr([a, b], instruments, date(2024, 1, 1))
        assert rate == pytest.approx(0.08, abs=1e-6)
