"""Run all checks sequentially and produce an aggregate summary.

Runs: lint -> typecheck -> deadcode -> test.
Stops at first failure unless --continue-on-error is passed. A failing
step is re-run with full output so the cause is visible in one pass.

Writes:
    .reports/summary.json  - Aggregate results from all tools

Stdout:
    [ci] lint:      PASS (0 issues)
    [ci] typecheck: PASS (0 errors)
    [ci] deadcode:  PASS (0 unused)
    [ci] test:      PASS (180 passed | 91.4% coverage)
    [ci] OVERALL:   PASS
"""

from __future__ import annotations

import importlib
import sys
from typing import Any

from scripts._report import parse_verbose_flag

STEPS: list[tuple[str, str]] = [
    ("lint", "scripts.lint"),
    ("typecheck", "scripts.typecheck"),
    ("deadcode", "scripts.deadcode"),
    ("test", "scripts.test"),
]


def _format_result(name: str, result: dict[str, Any]) -> str:
    """Format a single step result into a compact line."""
    status = "PASS" if result["passed"] else "FAIL"

    if name == "lint":
        detail = f"{result.get('total_issues', 0)} issues"
    elif name == "typecheck":
        detail = f"{result.get('errors', 0)} errors"
    elif name == "deadcode":
        detail = f"{result.get('unused_items', 0)} unused"
    elif name == "test":
        detail = (
            f"{result.get('tests_passed', 0)} passed"
            f" | {result.get('coverage_percent', 0):.1f}% coverage"
        )
    else:
        detail = ""

    return f"[ci] {name + ':':12s} {status} ({detail})"


def run(verbose: bool = False, continue_on_error: bool = False) -> dict[str, Any]:
    """Run all checks, return aggregate results."""
    results: dict[str, dict[str, Any]] = {}
    all_passed = True

    for name, module_path in STEPS:
        module = importlib.import_module(module_path)
        result = module.run(verbose=verbose)
        results[name] = result
        print(_format_result(name, result))

        if not result["passed"]:
            all_passed = False
            if not verbose:
                print(f"\n--- {name} failed, showing full output ---")
                module.run(verbose=True)
                print(f"--- end {name} output ---\n")
            if not continue_on_error:
                break

    overall = "PASS" if all_passed else "FAIL"
    print(f"[ci] {'OVERALL:':12s} {overall}")

    return {"passed": all_passed, "exit_code": 0 if all_passed else 1, "steps": results}


if __name__ == "__main__":
    result = run(
        verbose=parse_verbose_flag(),
        continue_on_error="--continue-on-error" in sys.argv,
    )
    sys.exit(result["exit_code"])
