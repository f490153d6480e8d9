"""Maintenance-mode flag, coordinator and request guard."""
from __future__ import annotations

from .flag import ExitResult, MaintenanceCoordinator, MaintenanceState, MaintenanceStore
from .guard import GuardDecision, MaintenanceGuard, check_request

__all__ = [
    "ExitResult",
    "GuardDecision",
    "MaintenanceCoordinator",
    "MaintenanceGuard",
    "MaintenanceState",
    "MaintenanceStore",
    "check_request",
]
