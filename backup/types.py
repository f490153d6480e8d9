"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class ComponentKind(str, Enum):
    DATABASE = "database"
    FILE_TREE = "file-tree"
    CONFIG = "config"


# Configuration lands last because it changes how the service reads the rest.
INJECTION_ORDER = (ComponentKind.DATABASE, ComponentKind.FILE_TREE, ComponentKind.CONFIG)


class RestoreOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED_UNCONFIRMED = "aborted-unconfirmed"


@dataclass(slots=True)
class BackupArtifact:
    """Single file captured as part of a snapshot."""

    path: Path
    relative_path: str
    size_bytes: int
    sha256: str


@dataclass(slots=True)
class ComponentRecord:
    """Outcome of extracting one component into the staging directory."""

    name: str
    kind: str
    size_bytes: int
    file_count: int
    empty: bool
    duration_ms: int


@dataclass(slots=True)
class BackupManifest:
    version: int
    app_version: str
    created_utc: str
    context: str
    components: List[Dict[str, object]]
    files: List[Dict[str, object]]


@dataclass(slots=True)
class StageResult:
    """Tagged result of one named pipeline stage."""

    stage: str
    ok: bool
    detail: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass(slots=True)
class Snapshot:
    """A fully populated staging directory ready for packaging."""

    staging_dir: Path
    manifest: BackupManifest
    components: List[ComponentRecord]
    artifacts: List[BackupArtifact]


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: List[str]
    freed_bytes: int
    reasons: Dict[str, List[str]] = field(default_factory=dict)
    protected: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class BackupResult:
    archive_id: str
    archive_path: Path
    encrypted: bool
    size_bytes: int
    manifest: BackupManifest
    stages: List[StageResult]
    retention: Optional[RetentionSummary] = None


@dataclass(slots=True)
class BackupSummary:
    id: str
    context: str
    created_utc: str
    size_bytes: int
    encrypted: bool
    path: Path


@dataclass(slots=True)
class RestoreResult:
    outcome: RestoreOutcome
    archive: Path
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    dry_run: bool = False


@dataclass(slots=True)
class VerificationReport:
    passed: List[str]
    archive_bytes: int
    envelope_bytes: int
    components: List[ComponentRecord]
    substituted: List[str] = field(default_factory=list)


__all__ = [
    "BackupArtifact",
    "BackupManifest",
    "BackupResult",
    "BackupSummary",
    "ComponentKind",
    "ComponentRecord",
    "INJECTION_ORDER",
    "RestoreOutcome",
    "RestoreResult",
    "RetentionSummary",
    "Snapshot",
    "StageResult",
    "VerificationReport",
]
