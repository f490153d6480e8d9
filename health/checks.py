from __future__ import annotations

import shutil
import sqlite3
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import requests

from core import db as core_db
from core.logging_utils import redact_uri

DEFAULT_TIMEOUT_S = 5.0


class HealthSeverity(str, Enum):
    MAJOR = "MAJOR"
    MINOR = "MINOR"


@dataclass(slots=True)
class HealthItem:
    severity: HealthSeverity
    code: str
    where: str
    hint: str
    details: Optional[str] = None


@dataclass(slots=True)
class HealthSummary:
    major: int = 0
    minor: int = 0

    @classmethod
    def from_items(cls, items: Sequence[HealthItem]) -> "HealthSummary":
        major = sum(1 for item in items if item.severity is HealthSeverity.MAJOR)
        minor = sum(1 for item in items if item.severity is HealthSeverity.MINOR)
        return cls(major=major, minor=minor)


@dataclass(slots=True)
class HealthReport:
    ts: float
    items: List[HealthItem]
    passed: List[str]

    @property
    def summary(self) -> HealthSummary:
        return HealthSummary.from_items(self.items)

    @property
    def healthy(self) -> bool:
        return self.summary.major == 0


@dataclass(slots=True)
class HealthTargets:
    """Endpoints probed after maintenance ends."""

    working_dir: Path
    api_url: Optional[str] = None
    frontend_url: Optional[str] = None
    database_url: Optional[str] = None
    timeout_s: float = DEFAULT_TIMEOUT_S

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], working_dir: Path) -> "HealthTargets":
        health = settings.get("health") if isinstance(settings.get("health"), dict) else {}
        sources = settings.get("sources") if isinstance(settings.get("sources"), dict) else {}
        try:
            timeout = float(health.get("timeout_s") or DEFAULT_TIMEOUT_S)
        except (TypeError, ValueError):
            timeout = DEFAULT_TIMEOUT_S
        return cls(
            working_dir=working_dir,
            api_url=health.get("api_url") or None,
            frontend_url=health.get("frontend_url") or None,
            database_url=sources.get("database_url") or None,
            timeout_s=timeout,
        )


# A check yields findings; it returns normally with nothing to report when healthy.
CheckFunc = Callable[[HealthTargets], Iterator[HealthItem]]


def _probe(url: str, timeout: float) -> Optional[str]:
    """Return ``None`` when ``url`` answers 2xx, else a short failure reason."""

    try:
        response = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
    except requests.RequestException as exc:
        return f"{type(exc).__name__}: {exc}"
    if 200 <= response.status_code < 300:
        return None
    return f"HTTP {response.status_code}"


def _check_backend(targets: HealthTargets) -> Iterator[HealthItem]:
    if not targets.api_url:
        return iter(())
    url = f"{targets.api_url.rstrip('/')}/api/health"
    failure = _probe(url, targets.timeout_s)
    if failure is None:
        return iter(())
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="BACKEND_UNHEALTHY",
                where=url,
                hint="Check the API container logs and restart it",
                details=failure,
            )
        ]
    )


def _check_frontend(targets: HealthTargets) -> Iterator[HealthItem]:
    if not targets.frontend_url:
        return iter(())
    base = targets.frontend_url.rstrip("/")
    failure = _probe(f"{base}/health", targets.timeout_s)
    if failure is None:
        return iter(())
    # Older frontends only serve the root page.
    if _probe(f"{base}/", targets.timeout_s) is None:
        return iter(())
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="FRONTEND_UNREACHABLE",
                where=base,
                hint="Check the web server serving the storefront",
                details=failure,
            )
        ]
    )


def _check_sqlite(path: Path) -> Iterator[HealthItem]:
    if not path.exists():
        return iter(
            [
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="DB_MISSING",
                    where=str(path),
                    hint="Restore the database or fix DATABASE_URL",
                )
            ]
        )
    try:
        finding = core_db.quick_check(path)
    except sqlite3.Error as exc:
        finding = str(exc)
    if finding is None:
        return iter(())
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="DB_CHECK_FAIL",
                where=str(path),
                hint="Run PRAGMA integrity_check and restore from backup if needed",
                details=finding,
            )
        ]
    )


def _check_mongo(uri: str, timeout: float) -> Iterator[HealthItem]:
    shell = shutil.which("mongosh")
    if shell is None:
        return iter(
            [
                HealthItem(
                    severity=HealthSeverity.MINOR,
                    code="DB_CHECK_SKIPPED",
                    where="mongosh",
                    hint="Install mongosh to verify database connectivity",
                )
            ]
        )
    try:
        proc = subprocess.run(
            [shell, uri, "--quiet", "--eval", "db.adminCommand('ping')"],
            capture_output=True,
            text=True,
            timeout=max(timeout, 1.0) * 2,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        details = str(exc)
    else:
        if proc.returncode == 0:
            return iter(())
        details = (proc.stderr or proc.stdout or "").strip()[-200:] or f"exit {proc.returncode}"
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="DB_UNREACHABLE",
                where=redact_uri(uri),
                hint="Check that the database container is running",
                details=details,
            )
        ]
    )


def _check_database(targets: HealthTargets) -> Iterator[HealthItem]:
    url = targets.database_url
    if not url:
        return iter(())
    scheme = urlsplit(url).scheme.lower()
    if scheme == "sqlite":
        raw = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url[len("sqlite:"):]
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = targets.working_dir / path
        return _check_sqlite(path)
    if scheme in {"mongodb", "mongodb+srv"}:
        return _check_mongo(url, targets.timeout_s)
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MINOR,
                code="DB_SCHEME_UNKNOWN",
                where="sources.database_url",
                hint="Use a sqlite:/// or mongodb:// connection string",
                details=scheme or None,
            )
        ]
    )


CHECKS: Sequence[CheckFunc] = (
    _check_backend,
    _check_frontend,
    _check_database,
)


def run_checks(targets: HealthTargets, checks: Sequence[CheckFunc] = CHECKS) -> HealthReport:
    items: list[HealthItem] = []
    passed: list[str] = []
    for check in checks:
        name = getattr(check, "__name__", "check").lstrip("_").replace("check_", "", 1)
        try:
            found = list(check(targets))
        except Exception as exc:  # pragma: no cover - defensive
            found = [
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="CHECK_FAIL",
                    where=name,
                    hint="Check raised unexpectedly; inspect logs",
                    details=str(exc),
                )
            ]
        if found:
            items.extend(found)
        else:
            passed.append(name)
    return HealthReport(ts=time.time(), items=items, passed=passed)
