"""Backup, encryption and restore for the storefront's persistent state.

The service facade lives in :mod:`backup.api`; it is not imported here so the
maintenance and health packages can use :mod:`backup.logs` without a cycle.
"""
from __future__ import annotations

from .envelope import Passphrase
from .errors import AbortedUnconfirmed, BackupError
from .retention import RetentionPolicy
from .types import BackupResult, BackupSummary, RestoreOutcome, RestoreResult, RetentionSummary

__all__ = [
    "AbortedUnconfirmed",
    "BackupError",
    "BackupResult",
    "BackupSummary",
    "Passphrase",
    "RestoreOutcome",
    "RestoreResult",
    "RetentionPolicy",
    "RetentionSummary",
]
