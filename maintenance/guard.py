"""Per-request decision for a live service while maintenance is active."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from .flag import MaintenanceState, MaintenanceStore

DEFAULT_MESSAGE = "We are currently performing maintenance. Please check back soon."
ADMIN_ROLES = frozenset({"admin", "root"})
READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(slots=True)
class GuardDecision:
    allowed: bool
    reason: str
    status: int = 200
    payload: dict = field(default_factory=dict)


def check_request(
    state: MaintenanceState,
    *,
    method: str = "GET",
    role: Optional[str] = None,
    client_ip: Optional[str] = None,
    whitelist_ips: Iterable[str] = (),
    message: Optional[str] = None,
) -> GuardDecision:
    if not state.active:
        return GuardDecision(allowed=True, reason="inactive")
    if (role or "").lower() in ADMIN_ROLES:
        return GuardDecision(allowed=True, reason="admin")
    whitelist = {ip.strip() for ip in whitelist_ips if ip and ip.strip()}
    if client_ip and client_ip in whitelist:
        return GuardDecision(allowed=True, reason="whitelisted")
    if method.upper() in READ_METHODS:
        return GuardDecision(allowed=True, reason="read-only")
    return GuardDecision(
        allowed=False,
        reason="maintenance",
        status=503,
        payload={
            "ok": False,
            "error": "Service temporarily unavailable",
            "message": message or DEFAULT_MESSAGE,
            "maintenance": True,
        },
    )


class MaintenanceGuard:
    """Bind :func:`check_request` to a store and the ``maintenance`` settings."""

    def __init__(self, store: MaintenanceStore, settings: Optional[dict] = None) -> None:
        self._store = store
        settings = settings or {}
        self._message = settings.get("message") or DEFAULT_MESSAGE
        whitelist = settings.get("whitelist_ips")
        self._whitelist = [str(ip) for ip in whitelist] if isinstance(whitelist, list) else []

    def __call__(self, method: str, *, role: Optional[str] = None, client_ip: Optional[str] = None) -> GuardDecision:
        # MaintenanceStore.load already falls back to inactive on unreadable records.
        return check_request(
            self._store.load(),
            method=method,
            role=role,
            client_ip=client_ip,
            whitelist_ips=self._whitelist,
            message=self._message,
        )


__all__ = ["ADMIN_ROLES", "GuardDecision", "MaintenanceGuard", "check_request"]
