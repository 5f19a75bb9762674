"""Portfolio data store: DuckDB CRUD for accounts, instruments and positions.

Also keeps the import bookkeeping (pending cost entries and import keys),
the reconciliation history, and an audit trail of every insert or update
of an account, instrument or position.

Positions are written with compare-and-swap on ``version``: a write only
succeeds if the stored version is the one the caller loaded.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import duckdb

from portfoliotracker.errors import ConcurrentModificationError, NotFoundError
from portfoliotracker.money import Money
from portfoliotracker.portfolio.models import (
    Account,
    AccountType,
    Holding,
    Instrument,
    InstrumentType,
    Position,
    utc_now,
)

if TYPE_CHECKING:
    from portfoliotracker.portfolio.reconciliation import ReconciliationResult

logger = logging.getLogger(__name__)

_HOLDING_COST_PLACES = Decimal("1e-18")


def _generate_id(*parts: str) -> str:
    """Generate a deterministic ID from parts using SHA-256.

    Args:
        *parts: String components to hash.

    Returns:
        First 16 hex characters of the SHA-256 digest.

    """
    content = "|".join(parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def _to_db_time(value: datetime | None) -> datetime | None:
    """Convert to naive UTC for TIMESTAMP columns."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC)


def _rows(conn: duckdb.DuckDBPyConnection, query: str, params: list[Any]) -> list[dict[str, Any]]:
    result = conn.execute(query, params).fetchall()
    columns = [desc[0] for desc in conn.description]
    return [dict(zip(columns, row, strict=True)) for row in result]


# ── Audit ──


def record_audit(
    conn: duckdb.DuckDBPyConnection,
    entity_type: str,
    entity_id: str,
    action: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Append an audit row.

    Args:
        conn: Active DuckDB connection.
        entity_type: "account", "instrument" or "position".
        entity_id: Identifier of the changed entity.
        action: "insert" or "update".
        details: Optional JSON-serializable description of the change.

    """
    now = utc_now()
    audit_id = _generate_id(entity_type, entity_id, action, uuid.uuid4().hex)
    conn.execute(
        """
        INSERT OR REPLACE INTO audit_log
            (id, entity_type, entity_id, action, details, recorded_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            audit_id,
            entity_type,
            entity_id,
            action,
            json.dumps(details or {}, default=str, sort_keys=True),
            _to_db_time(now),
        ],
    )


def get_audit_log(
    conn: duckdb.DuckDBPyConnection,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> list[dict[str, Any]]:
    """Query audit rows, oldest first, with optional filters."""
    query = "SELECT * FROM audit_log WHERE 1=1"
    params: list[Any] = []

    if entity_type:
        query += " AND entity_type = ?"
        params.append(entity_type)
    if entity_id:
        query += " AND entity_id = ?"
        params.append(entity_id)

    query += " ORDER BY recorded_at ASC"
    return _rows(conn, query, params)


# ── Accounts ──


def add_account(conn: duckdb.DuckDBPyConnection, account: Account) -> str:
    """Insert a new account.

    Returns:
        The account ID.

    """
    conn.execute(
        """
        INSERT INTO accounts (id, name, broker_name, account_type, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            account.account_id,
            account.name,
            account.broker_name,
            account.account_type.value,
            _to_db_time(account.created_at),
        ],
    )
    record_audit(
        conn,
        "account",
        account.account_id,
        "insert",
        {"name": account.name, "broker": account.broker_name},
    )
    logger.info("Added account %s (%s)", account.account_id, account.name)
    return account.account_id


def _account_from_row(row: dict[str, Any]) -> Account:
    return Account(
        account_id=row["id"],
        name=row["name"],
        broker_name=row["broker_name"],
        account_type=AccountType(row["account_type"]),
        created_at=_from_db_time(row["created_at"]) or utc_now(),
    )


def get_account(conn: duckdb.DuckDBPyConnection, account_id: str) -> Account:
    """Load one account.

    Raises:
        NotFoundError: If no account has this ID.

    """
    rows = _rows(conn, "SELECT * FROM accounts WHERE id = ?", [account_id])
    if not rows:
        msg = f"Account not found: {account_id}"
        raise NotFoundError(msg)
    return _account_from_row(rows[0])


def list_accounts(conn: duckdb.DuckDBPyConnection) -> list[Account]:
    """All accounts ordered by ID."""
    rows = _rows(conn, "SELECT * FROM accounts ORDER BY id", [])
    return [_account_from_row(row) for row in rows]


# ── Instruments ──


def upsert_instrument(
    conn: duckdb.DuckDBPyConnection,
    instrument: Instrument,
    currency: str,
) -> None:
    """Insert or update an instrument, including its current price."""
    exists = conn.execute(
        "SELECT 1 FROM instruments WHERE symbol = ?", [instrument.symbol]
    ).fetchone()
    price = instrument.current_price.amount if instrument.current_price else None

    conn.execute(
        """
        INSERT OR REPLACE INTO instruments
            (symbol, name, instrument_type, current_price, currency, price_updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            instrument.symbol,
            instrument.name,
            instrument.instrument_type.value,
            price,
            currency,
            _to_db_time(instrument.price_updated_at),
        ],
    )
    record_audit(
        conn,
        "instrument",
        instrument.symbol,
        "update" if exists else "insert",
        {"name": instrument.name, "price": price},
    )


def _instrument_from_row(row: dict[str, Any]) -> Instrument:
    price = row["current_price"]
    return Instrument(
        symbol=row["symbol"],
        name=row["name"],
        instrument_type=InstrumentType(row["instrument_type"]),
        current_price=None if price is None else Money(Decimal(price), row["currency"]),
        price_updated_at=_from_db_time(row["price_updated_at"]),
    )


def get_instrument(conn: duckdb.DuckDBPyConnection, symbol: str) -> Instrument | None:
    """Load one instrument, or None if unknown."""
    rows = _rows(conn, "SELECT * FROM instruments WHERE symbol = ?", [symbol])
    return _instrument_from_row(rows[0]) if rows else None


def list_instruments(conn: duckdb.DuckDBPyConnection) -> dict[str, Instrument]:
    """All instruments keyed by symbol."""
    rows = _rows(conn, "SELECT * FROM instruments ORDER BY symbol", [])
    return {row["symbol"]: _instrument_from_row(row) for row in rows}


# ── Positions ──


def _holdings_for(
    conn: duckdb.DuckDBPyConnection,
    symbol: str | None,
    currencies: dict[str, str],
) -> dict[str, list[Holding]]:
    query = "SELECT * FROM account_holdings"
    params: list[Any] = []
    if symbol is not None:
        query += " WHERE instrument_symbol = ?"
        params.append(symbol)
    query += " ORDER BY instrument_symbol, account_id"

    grouped: dict[str, list[Holding]] = {}
    for row in _rows(conn, query, params):
        held = row["instrument_symbol"]
        grouped.setdefault(held, []).append(
            Holding(
                account_id=row["account_id"],
                instrument_symbol=held,
                quantity=Decimal(row["quantity"]),
                cost_basis=Money(Decimal(row["cost_basis"]), currencies[held]),
                created_at=_from_db_time(row["created_at"]) or utc_now(),
                updated_at=_from_db_time(row["updated_at"]) or utc_now(),
            )
        )
    return grouped


def _positions_from_rows(
    conn: duckdb.DuckDBPyConnection,
    rows: list[dict[str, Any]],
    symbol: str | None,
) -> list[Position]:
    currencies = {row["instrument_symbol"]: row["currency"] for row in rows}
    holdings = _holdings_for(conn, symbol, currencies)
    return [
        Position.from_holdings(
            row["instrument_symbol"],
            holdings.get(row["instrument_symbol"], []),
            version=row["version"],
            created_at=_from_db_time(row["created_at"]),
            updated_at=_from_db_time(row["updated_at"]),
        )
        for row in rows
    ]


def load_position(conn: duckdb.DuckDBPyConnection, symbol: str) -> Position | None:
    """Load a position with its holdings, or None if not held."""
    rows = _rows(
        conn, "SELECT * FROM positions WHERE instrument_symbol = ?", [symbol]
    )
    if not rows:
        return None
    return _positions_from_rows(conn, rows, symbol)[0]


def list_positions(conn: duckdb.DuckDBPyConnection) -> list[Position]:
    """All positions ordered by symbol."""
    rows = _rows(conn, "SELECT * FROM positions ORDER BY instrument_symbol", [])
    return _positions_from_rows(conn, rows, None)


def _stored_version(conn: duckdb.DuckDBPyConnection, symbol: str) -> int:
    row = conn.execute(
        "SELECT version FROM positions WHERE instrument_symbol = ?", [symbol]
    ).fetchone()
    return int(row[0]) if row else 0


def save_position(
    conn: duckdb.DuckDBPyConnection,
    position: Position,
    expected_version: int,
) -> None:
    """Write a position and its holdings if the stored version is unchanged.

    Args:
        conn: Active DuckDB connection.
        position: New aggregate state.
        expected_version: Version the caller loaded; 0 for a new position.

    Raises:
        ConcurrentModificationError: If another writer changed the
            position since it was loaded.

    """
    symbol = position.instrument_symbol
    conn.begin()
    try:
        stored = _stored_version(conn, symbol)
        if stored != expected_version:
            msg = (
                f"Position {symbol} was modified concurrently: "
                f"expected version {expected_version}, found {stored}"
            )
            raise ConcurrentModificationError(msg)

        conn.execute(
            """
            INSERT OR REPLACE INTO positions
                (instrument_symbol, total_quantity, avg_cost_basis, currency,
                 version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                symbol,
                position.total_quantity,
                position.avg_cost_basis.amount,
                position.currency,
                position.version,
                _to_db_time(position.created_at),
                _to_db_time(position.updated_at),
            ],
        )
        for holding in position.holdings:
            conn.execute(
                """
                INSERT OR REPLACE INTO account_holdings
                    (instrument_symbol, account_id, quantity, cost_basis,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    symbol,
                    holding.account_id,
                    holding.quantity,
                    holding.cost_basis.amount.quantize(_HOLDING_COST_PLACES),
                    _to_db_time(holding.created_at),
                    _to_db_time(holding.updated_at),
                ],
            )
        record_audit(
            conn,
            "position",
            symbol,
            "update" if expected_version else "insert",
            {
                "version": position.version,
                "total_quantity": str(position.total_quantity),
                "avg_cost_basis": str(position.avg_cost_basis.amount),
            },
        )
        conn.commit()
    except duckdb.TransactionException as exc:
        conn.rollback()
        msg = f"Position {symbol} was modified concurrently: {exc}"
        raise ConcurrentModificationError(msg) from exc
    except Exception:
        conn.rollback()
        raise

    logger.debug("Saved position %s at version %d", symbol, position.version)


# ── Pending cost entries ──


def add_pending_cost_entry(
    conn: duckdb.DuckDBPyConnection,
    instrument_symbol: str,
    account_id: str,
    quantity: Decimal,
    batch_id: str | None = None,
) -> str:
    """Park a record that has no average cost yet.

    Returns:
        The pending entry ID.

    """
    now = utc_now()
    entry_id = _generate_id(
        batch_id or "", account_id, instrument_symbol, str(quantity), now.isoformat()
    )
    conn.execute(
        """
        INSERT INTO pending_cost_entries
            (id, instrument_symbol, account_id, quantity, batch_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [entry_id, instrument_symbol, account_id, quantity, batch_id, _to_db_time(now)],
    )
    logger.info(
        "Cost entry pending for %s in account %s (%s units)",
        instrument_symbol,
        account_id,
        quantity,
    )
    return entry_id


def _pending_from_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "instrument_symbol": row["instrument_symbol"],
        "account_id": row["account_id"],
        "quantity": Decimal(row["quantity"]),
        "batch_id": row["batch_id"],
        "created_at": _from_db_time(row["created_at"]),
    }


def get_pending_cost_entry(
    conn: duckdb.DuckDBPyConnection,
    entry_id: str,
) -> dict[str, Any]:
    """Load one pending entry.

    Raises:
        NotFoundError: If no pending entry has this ID.

    """
    rows = _rows(conn, "SELECT * FROM pending_cost_entries WHERE id = ?", [entry_id])
    if not rows:
        msg = f"Pending cost entry not found: {entry_id}"
        raise NotFoundError(msg)
    return _pending_from_row(rows[0])


def list_pending_cost_entries(conn: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    """All pending entries, oldest first."""
    rows = _rows(
        conn, "SELECT * FROM pending_cost_entries ORDER BY created_at, id", []
    )
    return [_pending_from_row(row) for row in rows]


def remove_pending_cost_entry(conn: duckdb.DuckDBPyConnection, entry_id: str) -> None:
    conn.execute("DELETE FROM pending_cost_entries WHERE id = ?", [entry_id])


# ── Import keys ──


def record_import_key(
    conn: duckdb.DuckDBPyConnection,
    batch_id: str,
    account_id: str,
    instrument_symbol: str,
) -> None:
    """Remember that a (batch, account, instrument) record was imported."""
    conn.execute(
        """
        INSERT OR IGNORE INTO import_keys
            (batch_id, account_id, instrument_symbol, imported_at)
        VALUES (?, ?, ?, ?)
        """,
        [batch_id, account_id, instrument_symbol, _to_db_time(utc_now())],
    )


def is_imported(
    conn: duckdb.DuckDBPyConnection,
    batch_id: str,
    account_id: str,
    instrument_symbol: str,
) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM import_keys
        WHERE batch_id = ? AND account_id = ? AND instrument_symbol = ?
        """,
        [batch_id, account_id, instrument_symbol],
    ).fetchone()
    return row is not None


# ── Reconciliation runs ──


def save_reconciliation_run(
    conn: duckdb.DuckDBPyConnection,
    result: ReconciliationResult,
    tolerance: Decimal,
    run_at: datetime | None = None,
) -> str:
    """Persist a reconciliation result.

    Returns:
        The run ID.

    """
    run_at = run_at or utc_now()
    payload = json.dumps(result.to_dict(), sort_keys=True)
    run_id = _generate_id(run_at.isoformat(), payload)
    conn.execute(
        """
        INSERT INTO reconciliation_runs
            (id, run_at, tolerance, has_discrepancies, result_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        [run_id, _to_db_time(run_at), tolerance, result.has_discrepancies(), payload],
    )
    logger.info(
        "Saved reconciliation run %s (discrepancies: %s)",
        run_id,
        result.has_discrepancies(),
    )
    return run_id


def list_reconciliation_runs(
    conn: duckdb.DuckDBPyConnection,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Reconciliation history, newest first.

    Returns:
        List of dicts with keys: id, run_at, tolerance,
        has_discrepancies, result (the decoded result dict).

    """
    query = "SELECT * FROM reconciliation_runs ORDER BY run_at DESC, id"
    params: list[Any] = []
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    return [
        {
            "id": row["id"],
            "run_at": _from_db_time(row["run_at"]),
            "tolerance": Decimal(row["tolerance"]),
            "has_discrepancies": bool(row["has_discrepancies"]),
            "result": json.loads(row["result_json"]),
        }
        for row in _rows(conn, query, params)
    ]
