"""Run vulture dead-code detection against the package and tests.

Writes:
    .reports/deadcode/vulture_output.txt - Full vulture output
    .reports/deadcode/report.json        - Unused items grouped by kind

Stdout:
    [deadcode] PASS: 0 unused items
    [deadcode] FAIL: 3 unused items (2 function, 1 variable)
"""

from __future__ import annotations

import re
import sys
from collections import Counter
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

TOOL_NAME = "deadcode"

# e.g. "portfoliotracker/service.py:42: unused function '_foo' (60% confidence)"
_ITEM_RE = re.compile(r"^(?P<path>[^:]+):(?P<line>\d+): unused (?P<kind>\w+) '(?P<name>[^']+)'")


def run(verbose: bool = False) -> dict[str, Any]:
    """Run vulture with the whitelist, write reports, return results."""
    result = run_command(
        [
            "uv",
            "run",
            "vulture",
            "portfoliotracker",
            "tests",
            "vulture_whitelist.py",
            "--min-confidence=60",
        ],
        cwd=PROJECT_ROOT,
    )
    full_output = result.stdout + result.stderr
    write_text_report(TOOL_NAME, full_output, "vulture_output.txt")

    items = [m.groupdict() for m in map(_ITEM_RE.match, full_output.splitlines()) if m]
    kinds = Counter(item["kind"] for item in items)

    passed = result.returncode == 0

    details: dict[str, Any] = {
        "unused_items": len(items),
        "by_kind": dict(kinds),
        "items": items,
    }
    write_json_report(TOOL_NAME, details)
    update_summary(TOOL_NAME, "pass" if passed else "fail", {"unused_items": len(items)})

    msg = f"{len(items)} unused items"
    if kinds:
        msg += " (" + ", ".join(f"{n} {kind}" for kind, n in sorted(kinds.items())) + ")"
    print_summary(TOOL_NAME, passed, msg)

    if verbose:
        print(full_output)

    return {"passed": passed, "exit_code": result.returncode, **details}


if __name__ == "__main__":
    result = run(verbose=parse_verbose_flag())
    sys.exit(result["exit_code"])
