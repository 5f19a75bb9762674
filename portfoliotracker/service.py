"""Portfolio service: the commands and reads exposed by the request loop.

Wires validation, aggregation, pricing, metrics and reconciliation to the
DuckDB store. Writes to one instrument's position are serialized by a
per-symbol ``threading.RLock``, held across the duplicate check, the
position write and the import bookkeeping; the store's compare-and-swap
on the position version catches any writer that bypasses the service.

Each call works on its own cursor of the shared connection, since a
DuckDB connection must not be used from several threads at once.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import duckdb

from portfoliotracker.config import Settings, load_settings
from portfoliotracker.db import portfolio_store as store
from portfoliotracker.errors import FieldError, NotFoundError, ValidationError
from portfoliotracker.ingest.csv_import import (
    parse_positions_csv,
    parse_price_csv,
    parse_statement_csv,
)
from portfoliotracker.ingest.validation import ImportKey, ValidatedPosition, validate
from portfoliotracker.market.prices import PriceBatchResult, apply_price_batch, update_price
from portfoliotracker.market.yahoo import fetch_latest_prices
from portfoliotracker.money import Money, to_decimal
from portfoliotracker.portfolio.aggregator import apply_holding
from portfoliotracker.portfolio.models import (
    Account,
    AccountType,
    Instrument,
    InstrumentType,
    Position,
    utc_now,
)
from portfoliotracker.portfolio.reconciliation import (
    PositionSnapshot,
    ReconciliationResult,
    reconcile,
    snapshot_positions,
)
from portfoliotracker.portfolio.summary import (
    PortfolioSummary,
    PositionDetail,
    PositionView,
    position_detail,
    position_view,
    sort_positions,
    summarize_portfolio,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordOutcome:
    """What happened to one accepted record.

    Exactly one of ``position`` (cost known, holding applied) and
    ``pending_entry_id`` (cost missing, parked) is set.
    """

    instrument_symbol: str
    account_id: str
    position: Position | None = None
    pending_entry_id: str | None = None


@dataclass
class ImportReport:
    """Outcome of a batch import."""

    batch_id: str
    applied: list[RecordOutcome] = field(default_factory=list)
    pending: list[RecordOutcome] = field(default_factory=list)
    rejected: list[tuple[int, list[FieldError]]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "applied": [
                {"instrumentSymbol": o.instrument_symbol, "accountId": o.account_id}
                for o in self.applied
            ],
            "pendingCostEntries": [
                {
                    "id": o.pending_entry_id,
                    "instrumentSymbol": o.instrument_symbol,
                    "accountId": o.account_id,
                }
                for o in self.pending
            ],
            "rejected": [
                {"row": index, "errors": [e.to_dict() for e in errors]}
                for index, errors in self.rejected
            ],
        }


@dataclass(frozen=True)
class ReconciliationRun:
    """A persisted reconciliation."""

    run_id: str
    run_at: datetime
    tolerance: Decimal
    result: ReconciliationResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.run_id,
            "runAt": self.run_at.isoformat(),
            "tolerance": str(self.tolerance),
            "hasDiscrepancies": self.result.has_discrepancies(),
            **self.result.to_dict(),
        }


class PortfolioService:
    """Command and query facade over one portfolio database.

    Args:
        conn: Open DuckDB connection with the schema created.
        settings: Resolved configuration; loaded from the environment
            if omitted.

    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        settings: Settings | None = None,
    ) -> None:
        self._conn = conn
        self.settings = settings or load_settings()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def currency(self) -> str:
        return self.settings.base_currency

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @staticmethod
    @contextmanager
    def _csv_errors() -> Iterator[None]:
        """Report unreadable CSV input as a validation failure."""
        try:
            yield
        except ValidationError:
            raise
        except (ValueError, OSError) as exc:
            raise ValidationError([FieldError("csvContent", str(exc))]) from exc

    def _lock_for(self, symbol: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = threading.RLock()
                self._locks[symbol] = lock
            return lock

    # ── Accounts ──

    def open_account(
        self,
        name: str,
        broker_name: str,
        account_type: str = AccountType.NORMAL.value,
        account_id: str | None = None,
    ) -> Account:
        """Create a brokerage account.

        Raises:
            ValidationError: If the name or broker is blank, the account
                type is unknown, or the ID is already taken.

        """
        errors: list[FieldError] = []
        if not name or not str(name).strip():
            errors.append(FieldError("name", "is required", name))
        if not broker_name or not str(broker_name).strip():
            errors.append(FieldError("brokerName", "is required", broker_name))
        try:
            kind = AccountType(str(account_type).strip().upper())
        except ValueError:
            allowed = ", ".join(t.value for t in AccountType)
            errors.append(FieldError("accountType", f"must be one of {allowed}", account_type))
            kind = AccountType.NORMAL

        account_id = (account_id or uuid.uuid4().hex[:12]).strip()
        with self._cursor() as cur:
            try:
                store.get_account(cur, account_id)
            except NotFoundError:
                pass
            else:
                errors.append(FieldError("accountId", "already exists", account_id))
            if errors:
                raise ValidationError(errors)

            account = Account(
                account_id=account_id,
                name=name.strip(),
                broker_name=broker_name.strip(),
                account_type=kind,
            )
            store.add_account(cur, account)
        return account

    def list_accounts(self) -> list[Account]:
        with self._cursor() as cur:
            return store.list_accounts(cur)

    # ── Positions ──

    def _require_account(self, cur: duckdb.DuckDBPyConnection, account_id: str) -> None:
        try:
            store.get_account(cur, account_id)
        except NotFoundError as exc:
            raise ValidationError(
                [FieldError("accountId", "account does not exist", account_id)]
            ) from exc

    def _ensure_instrument(
        self,
        cur: duckdb.DuckDBPyConnection,
        record: ValidatedPosition,
    ) -> None:
        """Create the instrument on first sight; apply a supplied price."""
        instrument = store.get_instrument(cur, record.instrument_symbol)
        changed = False
        if instrument is None:
            instrument = Instrument(
                symbol=record.instrument_symbol,
                name=record.instrument_name,
                instrument_type=record.instrument_type or InstrumentType.STOCK,
            )
            changed = True
        if record.current_price is not None:
            instrument = update_price(
                instrument, record.current_price.amount, currency=self.currency
            )
            changed = True
        if changed:
            store.upsert_instrument(cur, instrument, self.currency)

    def _apply(
        self,
        cur: duckdb.DuckDBPyConnection,
        symbol: str,
        account_id: str,
        quantity: Decimal,
        cost_basis: Money,
    ) -> Position:
        with self._lock_for(symbol):
            current = store.load_position(cur, symbol)
            updated = apply_holding(current, symbol, account_id, quantity, cost_basis)
            store.save_position(cur, updated, current.version if current else 0)
        logger.info(
            "Applied %s x %s @ %s in account %s (position v%d)",
            quantity,
            symbol,
            cost_basis,
            account_id,
            updated.version,
        )
        return updated

    def _accept(
        self,
        cur: duckdb.DuckDBPyConnection,
        record: ValidatedPosition,
    ) -> RecordOutcome:
        self._require_account(cur, record.account_id)
        symbol = record.instrument_symbol

        with self._lock_for(symbol):
            if record.batch_id is not None and store.is_imported(
                cur, record.batch_id, record.account_id, symbol
            ):
                raise ValidationError(
                    [
                        FieldError(
                            "instrumentSymbol",
                            f"already imported for account {record.account_id} "
                            f"in batch {record.batch_id}",
                            symbol,
                        )
                    ]
                )
            self._ensure_instrument(cur, record)

            if record.average_cost is None:
                entry_id = store.add_pending_cost_entry(
                    cur, symbol, record.account_id, record.quantity, record.batch_id
                )
                outcome = RecordOutcome(symbol, record.account_id, pending_entry_id=entry_id)
            else:
                position = self._apply(
                    cur, symbol, record.account_id, record.quantity, record.average_cost
                )
                outcome = RecordOutcome(symbol, record.account_id, position=position)

            if record.batch_id is not None:
                store.record_import_key(cur, record.batch_id, record.account_id, symbol)
        return outcome

    def add_position(self, record: Mapping[str, Any]) -> RecordOutcome:
        """Validate and apply one manually entered position record.

        Raises:
            ValidationError: If the record is invalid or the account
                does not exist.
            InvalidHoldingError: If the aggregate rejects the holding.
            ConcurrentModificationError: If the position changed
                underneath the write.

        """
        validated = validate(record, currency=self.currency)
        with self._cursor() as cur:
            return self._accept(cur, validated)

    def import_records(
        self,
        records: Iterable[Mapping[str, Any]],
        batch_id: str | None = None,
    ) -> ImportReport:
        """Import a batch of records, skipping any already imported.

        Invalid records are reported and skipped; the rest of the batch
        is still applied.
        """
        batch_id = batch_id or uuid.uuid4().hex
        report = ImportReport(batch_id=batch_id)
        seen: set[ImportKey] = set()

        with self._cursor() as cur:

            def _imported(key: ImportKey) -> bool:
                return key in seen or store.is_imported(
                    cur, key.batch_id, key.account_id, key.instrument_symbol
                )

            for index, record in enumerate(records, start=1):
                try:
                    validated = validate(
                        record,
                        batch_id=batch_id,
                        already_imported=_imported,
                        currency=self.currency,
                    )
                    outcome = self._accept(cur, validated)
                except ValidationError as exc:
                    report.rejected.append((index, exc.errors))
                    continue
                if validated.import_key is not None:
                    seen.add(validated.import_key)
                if outcome.position is not None:
                    report.applied.append(outcome)
                else:
                    report.pending.append(outcome)

        logger.info(
            "Import batch %s: %d applied, %d pending cost, %d rejected",
            batch_id,
            len(report.applied),
            len(report.pending),
            len(report.rejected),
        )
        return report

    def import_csv(
        self,
        csv_content: str | None = None,
        file_path: str | Path | None = None,
        batch_id: str | None = None,
        account_id: str | None = None,
    ) -> ImportReport:
        """Parse a positions CSV and import it as one batch."""
        with self._csv_errors():
            records = parse_positions_csv(
                file_path=file_path, csv_content=csv_content, account_id=account_id
            )
        return self.import_records(records, batch_id=batch_id)

    def pending_cost_entries(self) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            return store.list_pending_cost_entries(cur)

    def enter_cost(self, entry_id: str, average_cost: Any) -> Position:
        """Supply the missing average cost of a pending entry and apply it.

        Raises:
            NotFoundError: If the pending entry does not exist.
            ValidationError: If the cost is invalid.

        """
        with self._cursor() as cur:
            symbol = store.get_pending_cost_entry(cur, entry_id)["instrument_symbol"]
            with self._lock_for(symbol):
                # Re-read under the lock: a concurrent call may have consumed it.
                entry = store.get_pending_cost_entry(cur, entry_id)
                validated = validate(
                    {
                        "instrumentSymbol": entry["instrument_symbol"],
                        "accountId": entry["account_id"],
                        "quantity": entry["quantity"],
                        "averageCost": average_cost,
                    },
                    currency=self.currency,
                )
                if validated.average_cost is None:
                    raise ValidationError([FieldError("averageCost", "is required")])
                position = self._apply(
                    cur,
                    validated.instrument_symbol,
                    validated.account_id,
                    validated.quantity,
                    validated.average_cost,
                )
                store.remove_pending_cost_entry(cur, entry_id)
        return position

    def list_positions(
        self,
        sort_by: str = "current_value",
        descending: bool = True,
    ) -> list[PositionView]:
        """Position rows, sorted; unpriced positions last.

        Raises:
            ValidationError: If sort_by is not a supported key.

        """
        with self._cursor() as cur:
            positions = store.list_positions(cur)
            instruments = store.list_instruments(cur)
        views = [position_view(p, instruments.get(p.instrument_symbol)) for p in positions]
        try:
            return sort_positions(views, sort_by, descending)
        except ValueError as exc:
            raise ValidationError([FieldError("sortBy", str(exc), sort_by)]) from exc

    def position_detail(self, symbol: str, as_of: date | None = None) -> PositionDetail:
        """Detail view of one position.

        Raises:
            NotFoundError: If the instrument is not held.

        """
        symbol = symbol.strip().upper()
        with self._cursor() as cur:
            position = store.load_position(cur, symbol)
            if position is None:
                msg = f"Position not found: {symbol}"
                raise NotFoundError(msg)
            instrument = store.get_instrument(cur, symbol)
            accounts = {a.account_id: a for a in store.list_accounts(cur)}
        return position_detail(
            position,
            instrument,
            accounts,
            as_of or utc_now().date(),
            xirr_tolerance=self.settings.xirr_tolerance,
            xirr_max_iterations=self.settings.xirr_max_iterations,
        )

    def portfolio_summary(self, as_of: date | None = None) -> PortfolioSummary:
        with self._cursor() as cur:
            positions = store.list_positions(cur)
            instruments = store.list_instruments(cur)
        return summarize_portfolio(
            positions,
            instruments,
            as_of or utc_now().date(),
            self.currency,
            xirr_tolerance=self.settings.xirr_tolerance,
            xirr_max_iterations=self.settings.xirr_max_iterations,
        )

    # ── Prices ──

    def update_price(self, symbol: str, new_price: Any) -> Instrument:
        """Set one instrument's current price.

        Raises:
            NotFoundError: If the instrument is unknown.
            ValidationError: If the price is invalid.

        """
        symbol = symbol.strip().upper()
        with self._cursor() as cur:
            instrument = store.get_instrument(cur, symbol)
            if instrument is None:
                msg = f"Instrument not found: {symbol}"
                raise NotFoundError(msg)
            updated = update_price(instrument, new_price, currency=self.currency)
            store.upsert_instrument(cur, updated, self.currency)
        return updated

    def update_prices(self, prices: Mapping[str, Any]) -> PriceBatchResult:
        """Apply a batch of prices, persisting every one that is valid."""
        with self._cursor() as cur:
            result = apply_price_batch(
                store.list_instruments(cur), prices, currency=self.currency
            )
            for instrument in result.updated.values():
                store.upsert_instrument(cur, instrument, self.currency)
        return result

    def update_prices_csv(
        self,
        csv_content: str | None = None,
        file_path: str | Path | None = None,
    ) -> PriceBatchResult:
        with self._csv_errors():
            prices = parse_price_csv(file_path=file_path, csv_content=csv_content)
        return self.update_prices(prices)

    def refresh_prices(self, symbols: list[str] | None = None) -> PriceBatchResult:
        """Fetch latest prices from Yahoo Finance and apply them.

        Args:
            symbols: Symbols to refresh; all known instruments if omitted.

        """
        if symbols is None:
            with self._cursor() as cur:
                symbols = sorted(store.list_instruments(cur))
        wanted = [s.strip().upper() for s in symbols]
        fetched = fetch_latest_prices(wanted)
        result = self.update_prices(fetched)
        for symbol in wanted:
            if symbol not in fetched:
                result.failures[symbol] = "no price data"
        return result

    # ── Reconciliation ──

    def reconcile(
        self,
        statement: Mapping[str, PositionSnapshot],
        tolerance: Any = None,
    ) -> ReconciliationRun:
        """Reconcile positions against a statement and record the run.

        Raises:
            ValidationError: If the tolerance is not a non-negative number.

        """
        if tolerance is None:
            fraction = self.settings.reconciliation_tolerance
        else:
            try:
                fraction = to_decimal(tolerance)
            except ValueError as exc:
                raise ValidationError(
                    [FieldError("tolerance", "must be a number", tolerance)]
                ) from exc

        with self._cursor() as cur:
            system = snapshot_positions(
                store.list_positions(cur), store.list_instruments(cur)
            )
            try:
                result = reconcile(system, statement, fraction)
            except ValueError as exc:
                raise ValidationError(
                    [FieldError("tolerance", "must not be negative", tolerance)]
                ) from exc
            run_at = utc_now()
            run_id = store.save_reconciliation_run(cur, result, fraction, run_at)

        if result.has_discrepancies():
            logger.warning(
                "Reconciliation %s found %d quantity, %d value, %d missing, %d extra",
                run_id,
                len(result.quantity_mismatches),
                len(result.value_mismatches),
                len(result.missing_in_system),
                len(result.extra_in_system),
            )
        return ReconciliationRun(run_id, run_at, fraction, result)

    def reconcile_csv(
        self,
        csv_content: str | None = None,
        file_path: str | Path | None = None,
        tolerance: Any = None,
    ) -> ReconciliationRun:
        with self._csv_errors():
            statement = parse_statement_csv(
                file_path=file_path, csv_content=csv_content, currency=self.currency
            )
        return self.reconcile(statement, tolerance)

    def reconciliation_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            return store.list_reconciliation_runs(cur, limit)
