"""DuckDB connection management for the portfolio tracker.

Handles database initialization, schema creation, and connection
lifecycle. The database lives in the configured data directory::

    ~/.portfoliotracker/
      data/
        portfolio.duckdb

"""

from __future__ import annotations

import logging
from pathlib import Path

import duckdb

from portfoliotracker.config import DEFAULT_DATA_DIR
from portfoliotracker.db.schema import ALL_TABLES

logger = logging.getLogger(__name__)


def get_connection(
    db_path: str | Path | None = None,
    read_only: bool = False,
) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection.

    Args:
        db_path: Path to the .duckdb file. If None, uses in-memory database.
        read_only: Open in read-only mode.

    Returns:
        Active DuckDB connection.

    """
    if db_path is None:
        return duckdb.connect(":memory:")

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def _create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    for ddl in ALL_TABLES:
        conn.execute(ddl)


def init_portfolio_db(
    db_path: str | Path | None = None,
) -> duckdb.DuckDBPyConnection:
    """Initialize the portfolio database with schema.

    Args:
        db_path: Path to the portfolio.duckdb file.
            Defaults to ~/.portfoliotracker/data/portfolio.duckdb.

    Returns:
        Initialized DuckDB connection.

    """
    if db_path is None:
        db_path = DEFAULT_DATA_DIR / "portfolio.duckdb"

    conn = get_connection(db_path)
    _create_schema(conn)
    logger.info("Portfolio database initialized at %s", db_path)
    return conn


def init_memory_db() -> duckdb.DuckDBPyConnection:
    """Create an in-memory database with full schema.

    Useful for testing and ephemeral operations.

    Returns:
        In-memory DuckDB connection with all tables created.

    """
    conn = get_connection(None)
    _create_schema(conn)
    return conn
