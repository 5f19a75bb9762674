"""Runtime configuration for the tracker.

Defaults live in module constants; each can be overridden with a
``PORTFOLIOTRACKER_*`` environment variable. Malformed overrides fall back
to the default with a warning instead of failing at import time.

Environment variables:
    PORTFOLIOTRACKER_CURRENCY: Base currency code (default "PLN").
    PORTFOLIOTRACKER_RECONCILIATION_TOLERANCE: Fraction of the statement
        value a position value may deviate by (default 0.005, i.e. 0.5%).
    PORTFOLIOTRACKER_XIRR_TOLERANCE: Objective tolerance for XIRR (1e-7).
    PORTFOLIOTRACKER_XIRR_MAX_ITERATIONS: Iteration cap for XIRR (100).
    PORTFOLIOTRACKER_DATA_DIR: Directory for the DuckDB file.

"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

logger = logging.getLogger(__name__)

_ENV_PREFIX = "PORTFOLIOTRACKER_"

DEFAULT_CURRENCY = "PLN"
DEFAULT_RECONCILIATION_TOLERANCE = Decimal("0.005")
DEFAULT_XIRR_TOLERANCE = 1e-7
DEFAULT_XIRR_MAX_ITERATIONS = 100
DEFAULT_DATA_DIR = Path.home() / ".portfoliotracker" / "data"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration values.

    Attributes:
        base_currency: The single supported currency.
        reconciliation_tolerance: Allowed value deviation as a fraction.
        xirr_tolerance: Absolute tolerance on the normalized XIRR objective.
        xirr_max_iterations: Maximum root-finder iterations.
        data_dir: Where the portfolio database file is kept.

    """

    base_currency: str = DEFAULT_CURRENCY
    reconciliation_tolerance: Decimal = DEFAULT_RECONCILIATION_TOLERANCE
    xirr_tolerance: float = DEFAULT_XIRR_TOLERANCE
    xirr_max_iterations: int = DEFAULT_XIRR_MAX_ITERATIONS
    data_dir: Path = DEFAULT_DATA_DIR

    @property
    def database_path(self) -> Path:
        return self.data_dir / "portfolio.duckdb"


def _env(name: str) -> str | None:
    value = os.getenv(_ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        logger.warning("Ignoring malformed %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    if not value.is_finite() or value < 0:
        logger.warning("Ignoring out-of-range %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    if not 0 < value < float("inf"):
        logger.warning("Ignoring out-of-range %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring out-of-range %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    return value


def load_settings() -> Settings:
    """Build Settings from defaults and environment overrides."""
    data_dir = _env("DATA_DIR")
    return Settings(
        base_currency=(_env("CURRENCY") or DEFAULT_CURRENCY).upper(),
        reconciliation_tolerance=_env_decimal(
            "RECONCILIATION_TOLERANCE", DEFAULT_RECONCILIATION_TOLERANCE
        ),
        xirr_tolerance=_env_float("XIRR_TOLERANCE", DEFAULT_XIRR_TOLERANCE),
        xirr_max_iterations=_env_int(
            "XIRR_MAX_ITERATIONS", DEFAULT_XIRR_MAX_ITERATIONS
        ),
        data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
    )
