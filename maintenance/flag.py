"""Persisted maintenance flag and the enter/exit coordinator."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from backup.logs import BackupLogger
from core.fsutil import atomic_write_json, read_json

LOGGER = logging.getLogger("storefront.maintenance")

DEFAULT_REASON = "Scheduled maintenance"


@dataclass(slots=True, frozen=True)
class MaintenanceState:
    active: bool
    since: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"active": self.active, "since": self.since, "reason": self.reason}


INACTIVE = MaintenanceState(active=False)


class MaintenanceStore:
    """Read and write the maintenance record at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> MaintenanceState:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unreadable maintenance record %s (%s); treating as inactive", self.path, exc)
            return INACTIVE
        if not data or not data.get("active"):
            return INACTIVE
        return MaintenanceState(
            active=True,
            since=str(data.get("since") or "") or None,
            reason=str(data.get("reason") or "") or None,
        )

    def save(self, state: MaintenanceState) -> None:
        payload = state.to_dict()
        payload["updated_utc"] = datetime.now(timezone.utc).isoformat()
        atomic_write_json(self.path, payload)


@dataclass(slots=True)
class ExitResult:
    was_active: bool
    previous: MaintenanceState
    health: Optional[object] = None
    health_ok: Optional[bool] = None


HealthCallback = Callable[[], object]


def _report_ok(report: object) -> bool:
    healthy = getattr(report, "healthy", None)
    if healthy is None:
        return bool(report)
    return bool(healthy)


class MaintenanceCoordinator:
    """``inactive --enter--> active --exit--> inactive`` with a health check on exit."""

    def __init__(
        self,
        store: MaintenanceStore,
        *,
        logger: BackupLogger,
        health_check: Optional[HealthCallback] = None,
    ) -> None:
        self._store = store
        self._logger = logger
        self._health_check = health_check

    def status(self) -> MaintenanceState:
        return self._store.load()

    def enter(self, reason: Optional[str] = None) -> MaintenanceState:
        previous = self._store.load()
        state = MaintenanceState(
            active=True,
            since=datetime.now(timezone.utc).isoformat(),
            reason=(reason or "").strip() or DEFAULT_REASON,
        )
        self._store.save(state)
        self._logger.event(
            event="maintenance_entered",
            phase="maintenance",
            ok=True,
            reason=state.reason,
            since=state.since,
            was_active=previous.active,
        )
        return state

    def exit(self) -> ExitResult:
        previous = self._store.load()
        if not previous.active:
            self._logger.warning("maintenance_exit_noop", phase="maintenance", detail="not in maintenance mode")
            return ExitResult(was_active=False, previous=previous)

        self._store.save(INACTIVE)
        self._logger.event(
            event="maintenance_exited",
            phase="maintenance",
            ok=True,
            active_since=previous.since,
            reason=previous.reason,
        )
        result = ExitResult(was_active=True, previous=previous)
        if self._health_check is None:
            return result
        try:
            report = self._health_check()
        except Exception as exc:
            self._logger.warning("health_check_failed", phase="health", error=str(exc))
            result.health_ok = False
            return result
        result.health = report
        result.health_ok = _report_ok(report)
        if not result.health_ok:
            self._logger.warning("health_check_failed", phase="health", detail="services reported unhealthy")
        return result


__all__ = [
    "DEFAULT_REASON",
    "ExitResult",
    "INACTIVE",
    "MaintenanceCoordinator",
    "MaintenanceState",
    "MaintenanceStore",
]
