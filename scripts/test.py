"""Run pytest with coverage and JSON reporting.

Arguments after ``--`` are passed to pytest, e.g.
``python -m scripts.test -- -k reconcile``.

Writes:
    .reports/test/pytest.json        - pytest-json-report output
    .reports/test/coverage.json      - coverage.py JSON output
    .reports/test/htmlcov/           - HTML coverage report
    .reports/test/pytest_output.txt  - Full pytest console output

Stdout:
    [test] PASS: 180 passed, 0 failed, 0 skipped | coverage: 91.4%
    [test] FAIL: 178 passed, 2 failed, 0 skipped | coverage: 90.2%
"""

from __future__ import annotations

import json
import sys
from typing import Any

from scripts._report import (
    PROJECT_ROOT,
    ensure_report_dir,
    parse_verbose_flag,
    print_summary,
    run_command,
    update_summary,
    write_text_report,
)

TOOL_NAME = "test"


def _read_json(path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return {}


def _failed_tests(pytest_data: dict[str, Any]) -> list[str]:
    return [
        t["nodeid"]
        for t in pytest_data.get("tests", [])
        if t.get("outcome") in ("failed", "error")
    ]


def run(verbose: bool = False, extra_args: list[str] | None = None) -> dict[str, Any]:
    """Run pytest with coverage, write reports, return results."""
    report_dir = ensure_report_dir(TOOL_NAME)
    pytest_json_path = report_dir / "pytest.json"
    coverage_json_path = report_dir / "coverage.json"

    result = run_command(
        [
            "uv",
            "run",
            "python",
            "-m",
            "pytest",
            "--json-report",
            f"--json-report-file={pytest_json_path}",
            "--json-report-omit=keywords,streams,log",
            "--cov=portfoliotracker",
            f"--cov-report=json:{coverage_json_path}",
            f"--cov-report=html:{report_dir / 'htmlcov'}",
            "--cov-report=term",
            "-q",
            *(extra_args or []),
        ],
        cwd=PROJECT_ROOT,
        timeout=300,
    )
    full_output = result.stdout + result.stderr
    write_text_report(TOOL_NAME, full_output, "pytest_output.txt")

    pytest_data = _read_json(pytest_json_path)
    summary = pytest_data.get("summary", {})
    coverage_pct = _read_json(coverage_json_path).get("totals", {}).get("percent_covered", 0.0)
    failed = _failed_tests(pytest_data)

    passed = result.returncode == 0

    details: dict[str, Any] = {
        "tests_passed": summary.get("passed", 0),
        "tests_failed": summary.get("failed", 0),
        "tests_skipped": summary.get("skipped", 0),
        "tests_errors": summary.get("error", 0),
        "failed_tests": failed,
        "coverage_percent": round(coverage_pct, 1),
    }
    update_summary(TOOL_NAME, "pass" if passed else "fail", details)

    msg = (
        f"{details['tests_passed']} passed, {details['tests_failed']} failed,"
        f" {details['tests_skipped']} skipped | coverage: {coverage_pct:.1f}%"
    )
    print_summary(TOOL_NAME, passed, msg)
    for nodeid in failed:
        print(f"  failed: {nodeid}")

    if verbose:
        print(full_output)

    return {"passed": passed, "exit_code": result.returncode, **details}


if __name__ == "__main__":
    passthrough = sys.argv[sys.argv.index("--") + 1 :] if "--" in sys.argv else []
    result = run(verbose=parse_verbose_flag(), extra_args=passthrough)
    sys.exit(result["exit_code"])
