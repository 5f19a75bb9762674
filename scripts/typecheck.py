"""Run mypy type checking.

Writes:
    .reports/typecheck/mypy_output.txt  - Full mypy output
    .reports/typecheck/report.json      - Error counts per file

Stdout:
    [typecheck] PASS: 0 errors across 24 files
    [typecheck] FAIL: 5 errors across 24 files (service.py: 3, main.py: 2)
"""

from __future__ import annotations

import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any

from scripts._report import (
    PROJECT_ROOT,
    parse_verbose_flag,
    print_summary,
    run_command,
    update_summary,
    write_json_report,
    write_text_report,
)

TOOL_NAME = "typecheck"

_ERROR_RE = re.compile(r"^(?P<path>[^:]+\.py):\d+: error:")
_CHECKED_RE = re.compile(r"(?:in|checked) (\d+) source files?")


def run(verbose: bool = False) -> dict[str, Any]:
    """Run mypy, write reports, return results."""
    result = run_command(
        ["uv", "run", "mypy", "portfoliotracker"],
        cwd=PROJECT_ROOT,
    )
    full_output = result.stdout + result.stderr
    write_text_report(TOOL_NAME, full_output, "mypy_output.txt")

    per_file = Counter(
        m.group("path") for m in map(_ERROR_RE.match, full_output.splitlines()) if m
    )
    checked = _CHECKED_RE.search(full_output)
    n_files = int(checked.group(1)) if checked else 0
    n_errors = sum(per_file.values())

    passed = result.returncode == 0

    details: dict[str, Any] = {
        "errors": n_errors,
        "files_checked": n_files,
        "errors_by_file": dict(per_file),
    }
    write_json_report(TOOL_NAME, details)
    update_summary(TOOL_NAME, "pass" if passed else "fail", details)

    msg = f"{n_errors} errors across {n_files} files"
    if per_file:
        worst = ", ".join(f"{Path(p).name}: {n}" for p, n in per_file.most_common(3))
        msg += f" ({worst})"
    print_summary(TOOL_NAME, passed, msg)

    if verbose:
        print(full_output)

    return {"passed": passed, "exit_code": result.returncode, **details}


if __name__ == "__main__":
    result = run(verbose=parse_verbose_flag())
    sys.exit(result["exit_code"])
