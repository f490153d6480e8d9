from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Optional

from backup.logs import ops_logger
from core.paths import resolve_working_dir
from core.settings import load_settings

from .checks import HealthReport, HealthTargets, run_checks


def run_health_checks(
    working_dir: Optional[Path] = None,
    *,
    targets: Optional[HealthTargets] = None,
    log: bool = True,
) -> HealthReport:
    base = Path(working_dir) if working_dir else resolve_working_dir()
    if targets is None:
        targets = HealthTargets.from_settings(load_settings(base), base)
    report = run_checks(targets)
    if log:
        ops_logger(base).event(
            event="health_check",
            phase="health",
            ok=report.healthy,
            major=report.summary.major,
            minor=report.summary.minor,
            passed=report.passed,
            findings=[item.code for item in report.items],
        )
    return report


def format_report(report: HealthReport, *, include_details: bool = True) -> str:
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(report.ts))
    lines = [f"[{timestamp}] major={report.summary.major} minor={report.summary.minor}"]
    for name in report.passed:
        lines.append(f" - OK: {name}")
    for item in report.items:
        base = f" - {item.severity.value}:{item.code} @ {item.where} :: {item.hint}"
        if include_details and item.details:
            base += f" ({item.details})"
        lines.append(base)
    if not report.items and not report.passed:
        lines.append(" - OK: nothing configured to check")
    return "\n".join(lines)


def report_to_dict(report: HealthReport) -> dict:
    return {
        "ts": report.ts,
        "healthy": report.healthy,
        "summary": {
            "major": report.summary.major,
            "minor": report.summary.minor,
        },
        "passed": list(report.passed),
        "items": [
            {
                "severity": item.severity.value,
                "code": item.code,
                "where": item.where,
                "hint": item.hint,
                "details": item.details,
            }
            for item in report.items
        ],
    }


def cli(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run storefront health checks")
    parser.add_argument("--json", action="store_true", help="Output report as JSON")
    parser.add_argument(
        "--working-dir",
        type=Path,
        default=None,
        help="Override working directory",
    )
    args = parser.parse_args(argv)
    report = run_health_checks(working_dir=args.working_dir)
    if args.json:
        print(json.dumps(report_to_dict(report), indent=2))
    else:
        print(format_report(report))
    return 0 if report.healthy else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli())
