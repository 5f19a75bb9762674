"""Portfolio tracker database layer.

Provides DuckDB-based storage for accounts, instruments, positions,
import bookkeeping, and reconciliation history. All store functions take
an open connection as their first argument.
"""
