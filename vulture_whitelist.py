"""Vulture whitelist: references that appear unused but are called dynamically.

Items listed here are known false positives: the console entry point,
pytest fixtures consumed via dependency injection, dataclass lifecycle
hooks and protocol methods invoked by the standard library.

Usage:
    uv run vulture portfoliotracker tests vulture_whitelist.py
"""

# ── Entry points (called by the console script, not imported) ──
from portfoliotracker.main import _JsonEncoder, main  # noqa: F401

# ── Pytest fixtures (injected by pytest, never called directly) ──
from tests.conftest import cdr_instrument  # noqa: F401
from tests.conftest import cdr_position  # noqa: F401
from tests.conftest import jan_2023  # noqa: F401

# ── Dataclass lifecycle hooks (called by @dataclass, not user code) ──
from portfoliotracker.money import Money
from portfoliotracker.portfolio.models import Account, Holding

Money.__post_init__  # noqa: B018
Account.__post_init__  # noqa: B018
Holding.__post_init__  # noqa: B018

# ── Called by json.dumps(cls=...) ──
_JsonEncoder.default  # noqa: B018
