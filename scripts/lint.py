"""Run ruff linting and format checking.

Writes:
    .reports/lint/check.json       - Ruff check results (JSON)
    .reports/lint/check_output.txt - Ruff check full text output
    .reports/lint/format_diff.txt  - Ruff format diff (if any)

Stdout:
    [lint] PASS: 0 issues, format OK
    [lint] FAIL: 4 issues (PLR2004 x2, E501, F401) | format: 2 files
"""

from __future__ import annotations

import json
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

TOOL_NAME = "lint"
_TARGETS = ["portfoliotracker", "tests", "scripts"]


def _rule_summary(check_data: list[dict[str, Any]], top: int = 5) -> str:
    counts = Counter(d.get("code") or "syntax" for d in check_data)
    parts = [code if n == 1 else f"{code} x{n}" for code, n in counts.most_common(top)]
    if len(counts) > top:
        parts.append("...")
    return ", ".join(parts)


def run(verbose: bool = False) -> dict[str, Any]:
    """Run ruff check and ruff format check, write reports, return results."""
    check_json_result = run_command(
        ["uv", "run", "ruff", "check", "--output-format=json", *_TARGETS],
        cwd=PROJECT_ROOT,
    )
    try:
        check_data = json.loads(check_json_result.stdout or "[]")
    except json.JSONDecodeError:
        check_data = []
    write_json_report(TOOL_NAME, {"issues": check_data}, "check.json")

    check_text_result = run_command(
        ["uv", "run", "ruff", "check", *_TARGETS],
        cwd=PROJECT_ROOT,
    )
    check_text_output = check_text_result.stdout + check_text_result.stderr
    write_text_report(TOOL_NAME, check_text_output, "check_output.txt")

    format_result = run_command(
        ["uv", "run", "ruff", "format", "--check", "--diff", *_TARGETS],
        cwd=PROJECT_ROOT,
    )
    format_diff = format_result.stdout + format_result.stderr
    write_text_report(TOOL_NAME, format_diff, "format_diff.txt")

    format_clean = format_result.returncode == 0
    format_files = sum(
        1 for line in format_result.stdout.splitlines() if line.startswith("--- ")
    )
    passed = check_json_result.returncode == 0 and format_clean

    details: dict[str, Any] = {
        "total_issues": len(check_data),
        "rules": dict(Counter(d.get("code") or "syntax" for d in check_data)),
        "format_clean": format_clean,
        "format_files_changed": format_files,
    }
    update_summary(TOOL_NAME, "pass" if passed else "fail", details)

    msg = f"{len(check_data)} issues"
    if check_data:
        msg += f" ({_rule_summary(check_data)})"
    msg += ", format OK" if format_clean else f" | format: {format_files} files"
    print_summary(TOOL_NAME, passed, msg)

    if verbose:
        if check_text_output.strip():
            print(check_text_output)
        if not format_clean:
            print(format_diff)

    return {"passed": passed, "exit_code": 0 if passed else 1, **details}


if __name__ == "__main__":
    result = run(verbose=parse_verbose_flag())
    sys.exit(result["exit_code"])
