"""CSV import for position records, broker statements, and price files.

Three file shapes are supported, each with flexible column names so that
exports from different brokers can be read without per-broker code:

- Positions: symbol, account, quantity, average cost, optional name,
  type, and price. Numeric cells are kept as text; the import validator
  parses them and reports field-level errors.
- Statements: symbol, quantity, optional market value. Parsed to Decimal
  for reconciliation.
- Prices: symbol, price. Parsed to Decimal for a batch price update.

"""

from __future__ import annotations

import csv
import io
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

from portfoliotracker.money import Money, to_decimal
from portfoliotracker.portfolio.reconciliation import PositionSnapshot

logger = logging.getLogger(__name__)

# Known column name mappings from broker exports to our canonical format
_POSITION_COLUMNS: dict[str, list[str]] = {
    "instrument_symbol": ["symbol", "ticker", "isin", "instrument symbol"],
    "instrument_name": ["name", "instrument", "instrument name", "security", "description"],
    "instrument_type": ["type", "instrument type", "asset type"],
    "account_id": ["account", "account id", "account number"],
    "quantity": ["quantity", "qty", "shares", "units"],
    "average_cost": ["average cost", "avg cost", "cost basis", "cost per share", "purchase price"],
    "current_price": ["price", "current price", "last price", "market price"],
}

_STATEMENT_COLUMNS: dict[str, list[str]] = {
    "symbol": ["symbol", "ticker", "isin", "instrument symbol"],
    "quantity": ["quantity", "qty", "shares", "units"],
    "value": ["value", "market value", "current value", "valuation"],
}

_PRICE_COLUMNS: dict[str, list[str]] = {
    "symbol": ["symbol", "ticker", "isin"],
    "price": ["price", "new price", "close", "last price"],
}

# Plain, no-break and narrow no-break spaces used as thousands grouping
_SPACE_SEPARATORS = (" ", "\u00a0", "\u202f")


def _normalize_header(header: str) -> str:
    """Normalize a CSV header to lowercase, stripped, single-spaced."""
    return " ".join(header.strip().lower().replace("_", " ").split())


def _map_columns(
    raw_headers: list[str],
    aliases: dict[str, list[str]],
    required: set[str],
) -> dict[str, int]:
    """Map raw CSV headers to canonical field names.

    Args:
        raw_headers: Header row from the CSV.
        aliases: Canonical field name to accepted header spellings.
        required: Canonical fields that must be present.

    Returns:
        Dict mapping canonical field name to column index.

    Raises:
        ValueError: If a required column cannot be found.

    """
    normalized = [_normalize_header(h) for h in raw_headers]
    mapping: dict[str, int] = {}

    for canonical, names in aliases.items():
        for name in names:
            if name in normalized:
                mapping[canonical] = normalized.index(name)
                break

    missing = required - set(mapping.keys())
    if missing:
        msg = f"Required columns not found: {sorted(missing)}. Available: {raw_headers}"
        raise ValueError(msg)

    return mapping


def _clean_number(value: str) -> str:
    """Normalize a numeric cell to plain ``1234.56`` form.

    Currency symbols and space grouping are dropped. When both ``,`` and
    ``.`` appear, the later one is the decimal mark. A lone comma is a
    decimal mark (Polish exports) unless it is followed by exactly three
    digits with no space grouping; that cell is ambiguous and returned
    unchanged so the caller rejects it.
    """
    cleaned = value
    for token in ("$", "PLN", "zł"):
        cleaned = cleaned.replace(token, "")
    cleaned = cleaned.strip()
    spaced = any(sep in cleaned for sep in _SPACE_SEPARATORS)
    for sep in _SPACE_SEPARATORS:
        cleaned = cleaned.replace(sep, "")

    commas = cleaned.count(",")
    dots = cleaned.count(".")
    if commas and dots:
        if cleaned.rfind(",") > cleaned.rfind("."):
            return cleaned.replace(".", "").replace(",", ".")
        return cleaned.replace(",", "")
    if commas > 1:
        return cleaned.replace(",", "")
    if commas == 1:
        decimals = len(cleaned) - cleaned.index(",") - 1
        if spaced or decimals != 3:  # noqa: PLR2004
            return cleaned.replace(",", ".")
        return cleaned
    if dots > 1:
        return cleaned.replace(".", "")
    return cleaned


def _read_rows(
    file_path: str | Path | None,
    csv_content: str | None,
) -> tuple[list[str], list[list[str]]]:
    """Read a CSV from a path or a string into (headers, non-blank rows)."""
    if file_path is None and csv_content is None:
        msg = "Provide either file_path or csv_content"
        raise ValueError(msg)

    if file_path is not None:
        text = Path(file_path).read_text(encoding="utf-8-sig")
    else:
        text = csv_content or ""

    reader = csv.reader(io.StringIO(text))
    try:
        headers = next(reader)
    except StopIteration as exc:
        msg = "CSV has no header row"
        raise ValueError(msg) from exc

    rows = [row for row in reader if any(cell.strip() for cell in row)]
    return headers, rows


def _cell(row: list[str], col_map: dict[str, int], name: str) -> str:
    index = col_map.get(name)
    if index is None or index >= len(row):
        return ""
    return row[index].strip()


def parse_positions_csv(
    file_path: str | Path | None = None,
    csv_content: str | None = None,
    account_id: str | None = None,
) -> list[dict[str, Any]]:
    """Parse a positions CSV into raw records for the import validator.

    Provide either file_path or csv_content, not both.

    Args:
        file_path: Path to the CSV file.
        csv_content: Raw CSV content as a string.
        account_id: Account to use when the file has no account column
            (single-account broker exports).

    Returns:
        List of record dicts keyed by canonical field name. Values are
        the cell text, with numeric cells stripped of separators.

    Raises:
        ValueError: If neither source is provided or the symbol or
            quantity column is missing.

    """
    headers, rows = _read_rows(file_path, csv_content)
    col_map = _map_columns(headers, _POSITION_COLUMNS, {"instrument_symbol", "quantity"})

    records: list[dict[str, Any]] = []
    for row in rows:
        record: dict[str, Any] = {
            name: _cell(row, col_map, name) for name in col_map
        }
        for numeric in ("quantity", "average_cost", "current_price"):
            if numeric in record:
                record[numeric] = _clean_number(record[numeric])
        if not record.get("account_id") and account_id is not None:
            record["account_id"] = account_id
        records.append(record)

    logger.info("Parsed %d position records from CSV", len(records))
    return records


def parse_statement_csv(
    file_path: str | Path | None = None,
    csv_content: str | None = None,
    currency: str = "PLN",
) -> dict[str, PositionSnapshot]:
    """Parse a broker statement into reconciliation snapshots.

    Rows for the same symbol are summed, since statements often list one
    line per sub-account or lot. The summed value is kept only if every
    row for the symbol has one.

    Args:
        file_path: Path to the CSV file.
        csv_content: Raw CSV content as a string.
        currency: Currency of the value column.

    Returns:
        Snapshots keyed by upper-cased symbol.

    Raises:
        ValueError: If required columns are missing or a quantity or
            value cell is not a number.

    """
    headers, rows = _read_rows(file_path, csv_content)
    col_map = _map_columns(headers, _STATEMENT_COLUMNS, {"symbol", "quantity"})

    lines: dict[str, PositionSnapshot] = {}
    skipped = 0
    for row_num, row in enumerate(rows, start=2):
        symbol = _cell(row, col_map, "symbol").upper()
        if not symbol:
            skipped += 1
            continue
        try:
            quantity = to_decimal(_clean_number(_cell(row, col_map, "quantity")))
            raw_value = _clean_number(_cell(row, col_map, "value"))
            value = Money.of(raw_value, currency) if raw_value else None
        except ValueError as exc:
            msg = f"Row {row_num}: {exc}"
            raise ValueError(msg) from exc

        line = PositionSnapshot(symbol=symbol, quantity=quantity, value=value)
        previous = lines.get(symbol)
        lines[symbol] = line if previous is None else previous.combine(line)

    if skipped:
        logger.warning("Skipped %d statement rows without a symbol", skipped)
    logger.info("Parsed %d statement lines from CSV", len(lines))
    return lines


def parse_price_csv(
    file_path: str | Path | None = None,
    csv_content: str | None = None,
) -> dict[str, Decimal | str]:
    """Parse a batch price file.

    Unparseable prices are passed through as text so the price update
    can report them per symbol instead of failing the whole file.

    Returns:
        Dict mapping upper-cased symbol to price.

    """
    headers, rows = _read_rows(file_path, csv_content)
    col_map = _map_columns(headers, _PRICE_COLUMNS, {"symbol", "price"})

    prices: dict[str, Decimal | str] = {}
    for row in rows:
        symbol = _cell(row, col_map, "symbol").upper()
        if not symbol:
            continue
        raw = _clean_number(_cell(row, col_map, "price"))
        try:
            prices[symbol] = to_decimal(raw)
        except ValueError:
            prices[symbol] = raw

    logger.info("Parsed %d prices from CSV", len(prices))
    return prices
