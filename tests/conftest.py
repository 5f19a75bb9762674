"""Shared pytest fixtures for portfolio tracker tests."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from decimal import Decimal

import duckdb
import pytest

from portfoliotracker.config import Settings
from portfoliotracker.db.connection import init_memory_db
from portfoliotracker.money import Money
from portfoliotracker.portfolio.aggregator import apply_holding
from portfoliotracker.portfolio.models import Instrument, InstrumentType, Position
from portfoliotracker.service import PortfolioService


@pytest.fixture
def db() -> Iterator[duckdb.DuckDBPyConnection]:
    """Provide an in-memory database with the full schema."""
    conn = init_memory_db()
    yield conn
    conn.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Provide default settings pointing at a temporary data directory."""
    return Settings(data_dir=tmp_path)


@pytest.fixture
def service(db, settings) -> PortfolioService:
    return PortfolioService(db, settings)


@pytest.fixture
def jan_2023() -> datetime:
    return datetime(2023, 1, 1, 12, 0, tzinfo=UTC)


def _pln(amount: str | int) -> Money:
    return Money.of(amount, "PLN")


@pytest.fixture
def cdr_position(jan_2023) -> Position:
    """50 @ 500 in IKE plus 30 @ 520 in a normal account: 80 @ 507.50."""
    position = apply_holding(None, "CDR", "ike", Decimal(50), _pln(500), at=jan_2023)
    return apply_holding(position, "CDR", "normal", Decimal(30), _pln(520), at=jan_2023)


@pytest.fixture
def cdr_instrument() -> Instrument:
    return Instrument(
        symbol="CDR",
        name="CD Projekt",
        instrument_type=InstrumentType.STOCK,
        current_price=_pln(550),
    )
