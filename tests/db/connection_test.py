"""Tests for DuckDB connection management."""

from __future__ import annotations

import tempfile
from datetime import datetime
from pathlib import Path

from portfoliotracker.db.connection import get_connection, init_memory_db, init_portfolio_db
from portfoliotracker.db.schema import ALL_TABLES


class TestGetConnection:
    """Tests for database connection factory."""

    def test_in_memory_connection(self):
        conn = get_connection(None)
        assert conn is not None
        conn.execute("SELECT 1").fetchone()
        conn.close()

    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "deep" / "test.duckdb"
            conn = get_connection(db_path)
            conn.execute("SELECT 1").fetchone()
            conn.close()
            assert db_path.parent.exists()


class TestInitDb:
    """Tests for schema initialization."""

    def test_creates_all_tables(self):
        conn = init_memory_db()
        table_names = {t[0] for t in conn.execute("SHOW TABLES").fetchall()}

        expected = {
            "accounts",
            "instruments",
            "positions",
            "account_holdings",
            "pending_cost_entries",
            "import_keys",
            "reconciliation_runs",
            "audit_log",
        }
        assert expected.issubset(table_names)
        conn.close()

    def test_tables_are_empty(self):
        conn = init_memory_db()
        for table in ["accounts", "positions", "account_holdings"]:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()  # noqa: S608
            assert count[0] == 0
        conn.close()

    def test_idempotent_init(self):
        conn = init_memory_db()
        for ddl in ALL_TABLES:
            conn.execute(ddl)
        conn.close()

    def test_file_database_persists(self, tmp_path):
        db_path = tmp_path / "data" / "portfolio.duckdb"
        conn = init_portfolio_db(db_path)
        conn.execute(
            "INSERT INTO accounts VALUES (?, ?, ?, ?, ?)",
            ["a1", "IKE", "mBank", "IKE", datetime(2024, 1, 1)],
        )
        conn.close()

        conn = init_portfolio_db(db_path)
        assert conn.execute("SELECT name FROM accounts").fetchone() == ("IKE",)
        conn.close()
