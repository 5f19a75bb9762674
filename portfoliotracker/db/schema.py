"""DuckDB schema definitions for the portfolio tracker.

Contains DDL statements for all tables:
- accounts: Brokerage accounts
- instruments: Tradable instruments with their latest price
- positions: One row per instrument, carrying the optimistic version
- account_holdings: Per-account quantity and cost of each position
- pending_cost_entries: Imported records waiting for an average cost
- import_keys: (batch, account, instrument) keys already imported
- reconciliation_runs: History of statement reconciliations
- audit_log: Insert/update trail for accounts, instruments and positions

Quantities are DECIMAL(19, 8) and money DECIMAL(19, 4), so values round-trip
without float drift. Per-account cost bases keep the unrounded
weighted average, so position averages are recomputed from exact inputs.
Timestamps are stored as naive UTC.

"""

from __future__ import annotations

# ── Accounts ──

CREATE_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    id            VARCHAR PRIMARY KEY,
    name          VARCHAR NOT NULL,
    broker_name   VARCHAR NOT NULL,
    account_type  VARCHAR NOT NULL DEFAULT 'NORMAL',
    created_at    TIMESTAMP NOT NULL
);
"""

# ── Instruments ──

CREATE_INSTRUMENTS = """
CREATE TABLE IF NOT EXISTS instruments (
    symbol            VARCHAR PRIMARY KEY,
    name              VARCHAR NOT NULL,
    instrument_type   VARCHAR NOT NULL,
    current_price     DECIMAL(19, 4),
    currency          VARCHAR NOT NULL,
    price_updated_at  TIMESTAMP
);
"""

# ── Positions ──

CREATE_POSITIONS = """
CREATE TABLE IF NOT EXISTS positions (
    instrument_symbol  VARCHAR PRIMARY KEY,
    total_quantity     DECIMAL(19, 8) NOT NULL,
    avg_cost_basis     DECIMAL(19, 4) NOT NULL,
    currency           VARCHAR NOT NULL,
    version            INTEGER NOT NULL,
    created_at         TIMESTAMP NOT NULL,
    updated_at         TIMESTAMP NOT NULL
);
"""

CREATE_ACCOUNT_HOLDINGS = """
CREATE TABLE IF NOT EXISTS account_holdings (
    instrument_symbol  VARCHAR NOT NULL,
    account_id         VARCHAR NOT NULL,
    quantity           DECIMAL(19, 8) NOT NULL,
    cost_basis         DECIMAL(38, 18) NOT NULL,
    created_at         TIMESTAMP NOT NULL,
    updated_at         TIMESTAMP NOT NULL,
    PRIMARY KEY        (instrument_symbol, account_id)
);
"""

# ── Imports ──

CREATE_PENDING_COST_ENTRIES = """
CREATE TABLE IF NOT EXISTS pending_cost_entries (
    id                 VARCHAR PRIMARY KEY,
    instrument_symbol  VARCHAR NOT NULL,
    account_id         VARCHAR NOT NULL,
    quantity           DECIMAL(19, 8) NOT NULL,
    batch_id           VARCHAR,
    created_at         TIMESTAMP NOT NULL
);
"""

CREATE_IMPORT_KEYS = """
CREATE TABLE IF NOT EXISTS import_keys (
    batch_id           VARCHAR NOT NULL,
    account_id         VARCHAR NOT NULL,
    instrument_symbol  VARCHAR NOT NULL,
    imported_at        TIMESTAMP NOT NULL,
    PRIMARY KEY        (batch_id, account_id, instrument_symbol)
);
"""

# ── Reconciliation ──

CREATE_RECONCILIATION_RUNS = """
CREATE TABLE IF NOT EXISTS reconciliation_runs (
    id                VARCHAR PRIMARY KEY,
    run_at            TIMESTAMP NOT NULL,
    tolerance         DECIMAL(19, 8) NOT NULL,
    has_discrepancies BOOLEAN NOT NULL,
    result_json       VARCHAR NOT NULL
);
"""

# ── Audit ──

CREATE_AUDIT_LOG = """
CREATE TABLE IF NOT EXISTS audit_log (
    id           VARCHAR PRIMARY KEY,
    entity_type  VARCHAR NOT NULL,
    entity_id    VARCHAR NOT NULL,
    action       VARCHAR NOT NULL,
    details      VARCHAR DEFAULT '',
    recorded_at  TIMESTAMP NOT NULL
);
"""

# All DDL statements in creation order
ALL_TABLES: list[str] = [
    CREATE_ACCOUNTS,
    CREATE_INSTRUMENTS,
    CREATE_POSITIONS,
    CREATE_ACCOUNT_HOLDINGS,
    CREATE_PENDING_COST_ENTRIES,
    CREATE_IMPORT_KEYS,
    CREATE_RECONCILIATION_RUNS,
    CREATE_AUDIT_LOG,
]
