"""Portfolio tracker request loop entry point.

Communicates with a front end via stdin/stdout using newline-delimited
JSON messages.

Protocol:
    Request:  {"id": "uuid", "method": "string", "params": {}}
    Response: {"id": "uuid", "result": {}}
    Error:    {"id": "uuid", "error": {"timestamp", "status", "error",
               "message", "details", "path", "traceId"}}

Decimal amounts are written as strings. A metric that cannot be computed
is written as null next to a ``<name>Status`` field giving the reason.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import numpy as np

from portfoliotracker import log_config
from portfoliotracker.config import load_settings
from portfoliotracker.db.connection import init_portfolio_db
from portfoliotracker.errors import (
    ConcurrentModificationError,
    FieldError,
    NotFoundError,
    ValidationError,
)
from portfoliotracker.money import Money, to_decimal
from portfoliotracker.portfolio.models import Account, Instrument, Position, utc_now
from portfoliotracker.portfolio.reconciliation import PositionSnapshot
from portfoliotracker.service import PortfolioService, RecordOutcome

logger = logging.getLogger(__name__)

_STATUS_REASONS = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    500: "Internal Server Error",
}

_service: PortfolioService | None = None


class _JsonEncoder(json.JSONEncoder):
    """JSON encoder for Decimal, Money, dates, and NumPy types."""

    def default(self, o: Any) -> Any:
        """Convert domain and NumPy types to JSON-serializable values."""
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, Money):
            return o.to_dict()
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        if isinstance(o, np.ndarray):
            return o.tolist()
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            return float(o)
        if hasattr(o, "to_dict"):
            return o.to_dict()
        return super().default(o)


def _status_for(exc: BaseException) -> int:
    if isinstance(exc, (ValidationError, json.JSONDecodeError)):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConcurrentModificationError):
        return 409
    return 500


def error_envelope(exc: BaseException, path: str) -> dict[str, Any]:
    """Build the error body for a failed request.

    Args:
        exc: The exception raised while handling the request.
        path: The request method, reported as the failing path.

    Returns:
        Dict with timestamp, status, error, message, details, path and
        traceId. ``details`` lists field errors for validation failures.

    """
    status = _status_for(exc)
    details = [e.to_dict() for e in exc.errors] if isinstance(exc, ValidationError) else []
    return {
        "timestamp": utc_now().isoformat(),
        "status": status,
        "error": _STATUS_REASONS[status],
        "message": str(exc) or type(exc).__name__,
        "details": details,
        "path": path,
        "traceId": uuid.uuid4().hex,
    }


# ── Serializers ──


def _account_dict(account: Account) -> dict[str, Any]:
    return {
        "accountId": account.account_id,
        "name": account.name,
        "brokerName": account.broker_name,
        "accountType": account.account_type.value,
        "createdAt": account.created_at.isoformat(),
    }


def _instrument_dict(instrument: Instrument) -> dict[str, Any]:
    return {
        "symbol": instrument.symbol,
        "name": instrument.name,
        "instrumentType": instrument.instrument_type.value,
        "currentPrice": (
            instrument.current_price.to_dict() if instrument.current_price else None
        ),
        "priceUpdatedAt": (
            instrument.price_updated_at.isoformat()
            if instrument.price_updated_at
            else None
        ),
    }


def _position_dict(position: Position) -> dict[str, Any]:
    return {
        "instrumentSymbol": position.instrument_symbol,
        "totalQuantity": str(position.total_quantity),
        "averageCost": position.avg_cost_basis.to_dict(),
        "version": position.version,
    }


def _outcome_dict(outcome: RecordOutcome) -> dict[str, Any]:
    if outcome.position is not None:
        return {"status": "applied", "position": _position_dict(outcome.position)}
    return {
        "status": "pending_cost",
        "pendingId": outcome.pending_entry_id,
        "instrumentSymbol": outcome.instrument_symbol,
        "accountId": outcome.account_id,
    }


def _pending_dict(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": entry["id"],
        "instrumentSymbol": entry["instrument_symbol"],
        "accountId": entry["account_id"],
        "quantity": str(entry["quantity"]),
        "batchId": entry["batch_id"],
        "createdAt": entry["created_at"].isoformat() if entry["created_at"] else None,
    }


def _history_dict(run: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": run["id"],
        "runAt": run["run_at"].isoformat() if run["run_at"] else None,
        "tolerance": str(run["tolerance"]),
        "hasDiscrepancies": run["has_discrepancies"],
        **run["result"],
    }


def _as_of(params: dict[str, Any]) -> date | None:
    raw = params.get("asOf")
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            [FieldError("asOf", "must be a date (YYYY-MM-DD)", raw)]
        ) from exc


def _statement_from_lines(
    lines: list[dict[str, Any]],
    currency: str,
) -> dict[str, PositionSnapshot]:
    """Convert request statement lines into snapshots keyed by symbol.

    Repeated symbols are summed, as in a statement CSV.
    """
    errors: list[FieldError] = []
    statement: dict[str, PositionSnapshot] = {}
    for index, line in enumerate(lines):
        symbol = str(line.get("symbol") or "").strip().upper()
        if not symbol:
            errors.append(FieldError(f"lines[{index}].symbol", "is required"))
            continue
        try:
            quantity = to_decimal(line.get("quantity"))
        except ValueError:
            errors.append(
                FieldError(f"lines[{index}].quantity", "must be a number", line.get("quantity"))
            )
            continue
        raw_value = line.get("value")
        value = None
        if raw_value is not None:
            try:
                value = Money.of(raw_value, currency)
            except ValueError:
                errors.append(FieldError(f"lines[{index}].value", "must be a number", raw_value))
                continue
        line_snapshot = PositionSnapshot(symbol, quantity, value)
        previous = statement.get(symbol)
        statement[symbol] = line_snapshot if previous is None else previous.combine(line_snapshot)
    if errors:
        raise ValidationError(errors)
    return statement


# ── Handlers ──


def _accounts_open(service: PortfolioService, params: dict[str, Any]) -> Any:
    account = service.open_account(
        name=params.get("name", ""),
        broker_name=params.get("brokerName", ""),
        account_type=params.get("accountType", "NORMAL"),
        account_id=params.get("accountId"),
    )
    return _account_dict(account)


def _accounts_list(service: PortfolioService, params: dict[str, Any]) -> Any:
    return [_account_dict(a) for a in service.list_accounts()]


def _positions_create(service: PortfolioService, params: dict[str, Any]) -> Any:
    return _outcome_dict(service.add_position(params))


def _positions_import_csv(service: PortfolioService, params: dict[str, Any]) -> Any:
    if "records" in params:
        report = service.import_records(params["records"], batch_id=params.get("batchId"))
    else:
        report = service.import_csv(
            csv_content=params.get("csvContent"),
            file_path=params.get("filePath"),
            batch_id=params.get("batchId"),
            account_id=params.get("accountId"),
        )
    return report.to_dict()


def _positions_list(service: PortfolioService, params: dict[str, Any]) -> Any:
    views = service.list_positions(
        sort_by=params.get("sortBy", "current_value"),
        descending=bool(params.get("descending", True)),
    )
    return [v.to_dict() for v in views]


def _positions_detail(service: PortfolioService, params: dict[str, Any]) -> Any:
    return service.position_detail(params.get("symbol", ""), _as_of(params)).to_dict()


def _positions_pending(service: PortfolioService, params: dict[str, Any]) -> Any:
    return [_pending_dict(e) for e in service.pending_cost_entries()]


def _positions_enter_cost(service: PortfolioService, params: dict[str, Any]) -> Any:
    position = service.enter_cost(params.get("pendingId", ""), params.get("averageCost"))
    return _position_dict(position)


def _portfolio_summary(service: PortfolioService, params: dict[str, Any]) -> Any:
    return service.portfolio_summary(_as_of(params)).to_dict()


def _prices_update(service: PortfolioService, params: dict[str, Any]) -> Any:
    instrument = service.update_price(params.get("symbol", ""), params.get("newPrice"))
    return _instrument_dict(instrument)


def _prices_update_batch(service: PortfolioService, params: dict[str, Any]) -> Any:
    if "prices" in params:
        return service.update_prices(params["prices"]).to_dict()
    return service.update_prices_csv(
        csv_content=params.get("csvContent"), file_path=params.get("filePath")
    ).to_dict()


def _prices_refresh(service: PortfolioService, params: dict[str, Any]) -> Any:
    return service.refresh_prices(params.get("symbols")).to_dict()


def _reconciliation_run(service: PortfolioService, params: dict[str, Any]) -> Any:
    tolerance = params.get("tolerance")
    if "lines" in params:
        statement = _statement_from_lines(params["lines"], service.currency)
        return service.reconcile(statement, tolerance).to_dict()
    return service.reconcile_csv(
        csv_content=params.get("csvContent"),
        file_path=params.get("filePath"),
        tolerance=tolerance,
    ).to_dict()


def _reconciliation_history(service: PortfolioService, params: dict[str, Any]) -> Any:
    return [_history_dict(r) for r in service.reconciliation_history(params.get("limit"))]


_HANDLERS: dict[str, Callable[[PortfolioService, dict[str, Any]], Any]] = {
    # Accounts
    "accounts.open": _accounts_open,
    "accounts.list": _accounts_list,
    # Positions
    "positions.create": _positions_create,
    "positions.import_csv": _positions_import_csv,
    "positions.list": _positions_list,
    "positions.detail": _positions_detail,
    "positions.pending": _positions_pending,
    "positions.enter_cost": _positions_enter_cost,
    # Portfolio
    "portfolio.summary": _portfolio_summary,
    # Prices
    "prices.update": _prices_update,
    "prices.update_batch": _prices_update_batch,
    "prices.refresh": _prices_refresh,
    # Reconciliation
    "reconciliation.run": _reconciliation_run,
    "reconciliation.history": _reconciliation_history,
}


def _default_service() -> PortfolioService:
    global _service  # noqa: PLW0603
    if _service is None:
        settings = load_settings()
        _service = PortfolioService(init_portfolio_db(settings.database_path), settings)
    return _service


def dispatch(
    method: str,
    params: dict[str, Any],
    service: PortfolioService | None = None,
) -> Any:
    """Route a method call to the appropriate handler.

    Args:
        method: The method name (e.g., "positions.create").
        params: The parameters for the method.
        service: Service to run against; the default database if omitted.

    Returns:
        The JSON-ready result of the method call.

    Raises:
        NotFoundError: If the method is not recognized.

    """
    handler = _HANDLERS.get(method)
    if handler is None:
        msg = f"Unknown method: {method}"
        raise NotFoundError(msg)
    return handler(service or _default_service(), params)


def main() -> None:
    """Run the request loop.

    Reads newline-delimited JSON from stdin, dispatches to handlers,
    and writes JSON responses to stdout. Runs indefinitely until
    stdin is closed.
    """
    log_config.setup(verbose=bool(os.environ.get("PORTFOLIOTRACKER_VERBOSE")))

    for raw_line in sys.stdin:
        stripped = raw_line.strip()
        if not stripped:
            continue

        request: dict[str, Any] = {}
        method = "unknown"
        try:
            request = json.loads(stripped)
            if not isinstance(request, dict):
                raise ValidationError([FieldError("request", "must be a JSON object")])
            request_id = request.get("id", "unknown")
            if not request.get("method"):
                raise ValidationError([FieldError("method", "is required")])
            method = request["method"]
            params = request.get("params") or {}
            result = dispatch(method, params)
            response: dict[str, Any] = {"id": request_id, "result": result}
        except Exception as exc:  # noqa: BLE001 - loop must catch all errors and return them as JSON
            request_id = (
                request.get("id", "unknown") if isinstance(request, dict) else "unknown"
            )
            envelope = error_envelope(exc, method)
            if envelope["status"] == 500:  # noqa: PLR2004
                logger.exception("Request %s (%s) failed", request_id, method)
            else:
                logger.info("Request %s (%s) rejected: %s", request_id, method, exc)
            response = {"id": request_id, "error": envelope}
        sys.stdout.write(json.dumps(response, cls=_JsonEncoder) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    main()
