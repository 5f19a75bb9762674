"""Shared logging configuration.

Call ``setup()`` once at the top of ``main()`` to get ISO-8601 timestamps
on every log line. Logs go to stderr; stdout is reserved for the JSON
request/response protocol.
"""

from __future__ import annotations

import logging
import sys

_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def setup(*, verbose: bool = False) -> None:
    """Configure the root logger with timestamped output.

    Args:
        verbose: If True, set level to DEBUG; otherwise INFO.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
