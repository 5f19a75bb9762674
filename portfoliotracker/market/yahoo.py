"""Yahoo Finance price adapter.

Fetches the latest close for a set of symbols via the yfinance library,
for the price refresh command.

Note:
    yfinance uses an unofficial Yahoo Finance API. Rate limiting
    and respectful request patterns are required.

    yfinance is imported lazily. Functions raise ``ImportError`` at call
    time if the library is not installed.

"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from portfoliotracker.money import COST_PLACES, to_decimal

logger = logging.getLogger(__name__)

# Look back far enough to cover weekends and exchange holidays
_LOOKBACK_PERIOD = "5d"


def _require_yfinance() -> tuple[Any, Any]:
    """Lazy-import yfinance and pandas.

    Returns:
        Tuple of (yfinance module, pandas module).

    Raises:
        ImportError: If yfinance is not installed.

    """
    try:
        import pandas as pd
        import yfinance as yf
    except ImportError as exc:
        msg = (
            "yfinance is required for Yahoo Finance data. "
            "Install with: pip install yfinance"
        )
        raise ImportError(msg) from exc
    return yf, pd


def fetch_latest_price(symbol: str) -> Decimal | None:
    """Fetch the most recent daily close for one symbol.

    Args:
        symbol: Ticker symbol (e.g., "CDR.WA", "VWCE.DE").

    Returns:
        The close rounded to 4 decimal places, or None if Yahoo has no
        recent data for the symbol.

    Raises:
        ValueError: If symbol is empty.
        ImportError: If yfinance is not installed.

    """
    if not symbol or not symbol.strip():
        msg = "symbol must be a non-empty string"
        raise ValueError(msg)

    yf, pd = _require_yfinance()

    ticker = yf.Ticker(symbol.strip().upper())
    df = ticker.history(period=_LOOKBACK_PERIOD, auto_adjust=False)

    if df.empty:
        logger.warning("No recent price data for %s", symbol)
        return None

    close = df["Close"].dropna()
    if close.empty:
        logger.warning("No close price for %s", symbol)
        return None

    last = close.iloc[-1]
    if pd.isna(last):
        return None
    return to_decimal(float(last)).quantize(COST_PLACES)


def fetch_latest_prices(symbols: list[str]) -> dict[str, Decimal]:
    """Fetch latest closes for many symbols.

    Symbols with no data or a failed request are left out of the result
    and logged; the caller reports them as not refreshed.

    Args:
        symbols: Ticker symbols.

    Returns:
        Dict mapping upper-cased symbol to price.

    Raises:
        ImportError: If yfinance is not installed.

    """
    _require_yfinance()
    prices: dict[str, Decimal] = {}
    for symbol in symbols:
        key = symbol.strip().upper()
        try:
            price = fetch_latest_price(key)
        except (ValueError, KeyError, OSError) as exc:
            logger.warning("Price fetch failed for %s: %s", key, exc)
            continue
        if price is not None and price > 0:
            prices[key] = price
    logger.info("Fetched %d of %d prices from Yahoo", len(prices), len(symbols))
    return prices
