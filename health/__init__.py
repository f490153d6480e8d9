"""Post-maintenance health checks for the storefront services."""

from .checks import HealthItem, HealthReport, HealthSeverity, HealthTargets, run_checks
from .run import format_report, run_health_checks

__all__ = [
    "HealthItem",
    "HealthReport",
    "HealthSeverity",
    "HealthTargets",
    "format_report",
    "run_checks",
    "run_health_checks",
]
