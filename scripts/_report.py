"""Report files for the check scripts (lint, typecheck, deadcode, test).

Every tool writes into its own folder under ``.reports/`` and records its
status in ``.reports/summary.json``, which also lists the failing tools
from the latest run of each. Set
``PORTFOLIOTRACKER_REPORTS_DIR`` to write somewhere else (CI artifacts).
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parent.parent
REPORTS_DIR = Path(
    os.environ.get("PORTFOLIOTRACKER_REPORTS_DIR", PROJECT_ROOT / ".reports")
)
SUMMARY_FILE = "summary.json"


def ensure_report_dir(tool_name: str) -> Path:
    tool_dir = REPORTS_DIR / tool_name
    tool_dir.mkdir(parents=True, exist_ok=True)
    return tool_dir


def _write(tool_name: str, filename: str, text: str) -> Path:
    path = ensure_report_dir(tool_name) / filename
    path.write_text(text, encoding="utf-8")
    return path


def write_json_report(
    tool_name: str,
    data: dict[str, Any],
    filename: str = "report.json",
) -> Path:
    """Write ``data`` as indented JSON; Decimals and paths become strings."""
    return _write(tool_name, filename, json.dumps(data, indent=2, default=str) + "\n")


def write_text_report(
    tool_name: str,
    content: str,
    filename: str = "output.txt",
) -> Path:
    return _write(tool_name, filename, content)


def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: int = 300,
) -> subprocess.CompletedProcess[str]:
    """Run a tool from the project root and capture its output.

    A timeout is reported as a failed run (return code 1) with the
    reason in stderr, so callers handle it like any other failure.
    """
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            cwd=cwd or PROJECT_ROOT,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(
            args=cmd,
            returncode=1,
            stdout="",
            stderr=f"{' '.join(cmd)} did not finish within {timeout}s\n",
        )


def _load_summary(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"tools": {}}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        # A run killed mid-write leaves a truncated file; start over.
        return {"tools": {}}


def update_summary(tool_name: str, status: str, details: dict[str, Any]) -> None:
    """Record one tool's status and recompute the overall result."""
    REPORTS_DIR.mkdir(parents=True, exist_ok=True)
    path = REPORTS_DIR / SUMMARY_FILE
    summary = _load_summary(path)

    now = datetime.now(UTC).isoformat()
    summary["tools"][tool_name] = {"status": status, "timestamp": now, **details}
    failing = sorted(name for name, tool in summary["tools"].items() if tool["status"] != "pass")
    summary["generated_at"] = now
    summary["failing"] = failing
    summary["overall_status"] = "fail" if failing else "pass"

    path.write_text(json.dumps(summary, indent=2) + "\n", encoding="utf-8")


def print_summary(tool_name: str, passed: bool, message: str) -> None:
    print(f"[{tool_name}] {'PASS' if passed else 'FAIL'}: {message}")


def parse_verbose_flag() -> bool:
    return any(arg in ("--verbose", "-v") for arg in sys.argv[1:])
