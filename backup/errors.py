"""Error hierarchy for backup operations."""
from __future__ import annotations

from typing import Optional, Sequence


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    stage = "backup"


class ConfigurationError(BackupError):
    """Raised when settings required for an operation are missing or invalid."""

    stage = "config"


class SourceExtractionError(BackupError):
    """Raised when one component source fails to extract during a backup."""

    stage = "extract"

    def __init__(self, component: str, message: str) -> None:
        super().__init__(f"extraction of '{component}' failed: {message}")
        self.component = component


class PackagingError(BackupError):
    """Raised when the staging directory cannot be archived."""

    stage = "package"


class EnvelopeError(BackupError):
    """Base class for encryption envelope failures."""

    stage = "envelope"


class MissingPassphraseError(EnvelopeError):
    """Raised when no passphrase is configured for sealing or opening."""


class CipherError(EnvelopeError):
    """Raised when the cipher or its I/O fails while sealing."""


class WrongPassphraseError(EnvelopeError):
    """Raised when the supplied passphrase does not match the envelope."""


class CorruptEnvelopeError(EnvelopeError):
    """Raised when the envelope header or ciphertext fails validation."""


class InjectionError(BackupError):
    """Raised when one component fails during a restore."""

    stage = "inject"

    def __init__(
        self,
        component: str,
        message: str,
        *,
        succeeded: Sequence[str] = (),
        pending: Sequence[str] = (),
    ) -> None:
        done = ", ".join(succeeded) or "none"
        super().__init__(f"injection of '{component}' failed: {message} (already restored: {done})")
        self.component = component
        self.succeeded = list(succeeded)
        self.pending = list(pending)


class RunLockHeldError(BackupError):
    """Raised when another backup, restore or rotation run holds the lock."""

    stage = "lock"

    def __init__(self, message: str, *, holder: Optional[dict] = None) -> None:
        super().__init__(message)
        self.holder = dict(holder or {})


class VerificationError(BackupError):
    """Raised when a self-test stage assertion fails."""

    stage = "verify"

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"stage {stage} failed: {message}")
        self.failed_stage = stage


class OffsiteError(BackupError):
    """Raised when archives cannot be pushed to the offsite host."""

    stage = "offsite"


class RunCancelledError(BackupError):
    """Raised inside a run when a termination signal arrives."""

    stage = "cancel"


class AbortedUnconfirmed(Exception):
    """Raised when a restore is requested without a valid confirmation token.

    This is an intentional safety stop, not a failure.
    """


__all__ = [
    "AbortedUnconfirmed",
    "BackupError",
    "CipherError",
    "ConfigurationError",
    "CorruptEnvelopeError",
    "EnvelopeError",
    "InjectionError",
    "MissingPassphraseError",
    "OffsiteError",
    "PackagingError",
    "RunCancelledError",
    "RunLockHeldError",
    "SourceExtractionError",
    "VerificationError",
    "WrongPassphraseError",
]
