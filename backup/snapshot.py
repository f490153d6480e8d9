"""Capture component sources into one staging directory."""
from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Sequence

from core.fsutil import sha256_file
from core.versioning import get_app_version

from .errors import BackupError, RunCancelledError, SourceExtractionError
from .logs import BackupLogger
from .sources import ComponentSource
from .types import BackupArtifact, BackupManifest, ComponentRecord, Snapshot

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def staging_directory(root: Path, *, logger: BackupLogger, prefix: str = "run-") -> Iterator[Path]:
    """Yield a fresh private directory under ``root`` and always remove it."""

    root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    logger.info("staging_created", path=str(path))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.info("staging_removed", path=str(path), leftover=path.exists())


def _collect_artifacts(component_dir: Path, staging_dir: Path) -> List[BackupArtifact]:
    artifacts: List[BackupArtifact] = []
    for item in sorted(component_dir.rglob("*")):
        if not item.is_file() or item.is_symlink():
            continue
        artifacts.append(
            BackupArtifact(
                path=item,
                relative_path=item.relative_to(staging_dir).as_posix(),
                size_bytes=item.stat().st_size,
                sha256=sha256_file(item),
            )
        )
    return artifacts


def _write_manifest(path: Path, manifest: BackupManifest) -> None:
    data = {
        "version": manifest.version,
        "app_version": manifest.app_version,
        "created_utc": manifest.created_utc,
        "context": manifest.context,
        "components": manifest.components,
        "files": manifest.files,
    }
    with path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, sort_keys=True)


def load_manifest(path: Path) -> dict:
    if not path.exists():
        raise BackupError(f"backup manifest missing at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict) or not isinstance(data.get("files"), list):
        raise BackupError("invalid manifest structure")
    return data


def verify_manifest_files(root: Path, manifest: dict) -> int:
    """Check every manifest entry under ``root``; return the file count."""

    count = 0
    for entry in manifest.get("files", []):
        if not isinstance(entry, dict):
            raise BackupError("invalid manifest entry")
        rel = entry.get("path")
        checksum = entry.get("sha256")
        if not isinstance(rel, str) or not isinstance(checksum, str):
            raise BackupError("manifest entry missing path/sha256")
        source = root / rel
        if not source.is_file():
            raise BackupError(f"missing snapshot file: {rel}")
        expected_size = entry.get("bytes")
        if expected_size is not None and int(expected_size) != source.stat().st_size:
            raise BackupError(f"size mismatch for {rel}")
        if sha256_file(source) != checksum:
            raise BackupError(f"checksum mismatch for {rel}")
        count += 1
    return count


def capture_snapshot(
    sources: Sequence[ComponentSource],
    staging_dir: Path,
    *,
    context: str,
    logger: BackupLogger,
) -> Snapshot:
    """Run every source's ``extract`` in order, stopping at the first failure.

    Each source writes into ``<name>.partial`` which is renamed to ``<name>``
    only after ``extract`` returns, so a half-written component never looks
    valid. Cleanup of ``staging_dir`` belongs to the caller (see
    :func:`staging_directory`).
    """

    names = [source.name for source in sources]
    if len(set(names)) != len(names):
        raise BackupError(f"component names must be unique: {names}")

    records: List[ComponentRecord] = []
    artifacts: List[BackupArtifact] = []
    for source in sources:
        partial = staging_dir / f"{source.name}.partial"
        final = staging_dir / source.name
        partial.mkdir(parents=True)
        logger.info("component_start", component=source.name, kind=source.kind.value, source=source.describe())
        started = time.monotonic()
        try:
            source.extract(partial)
        except RunCancelledError:
            raise
        except Exception as exc:
            logger.event(
                event="component_failed",
                phase="extract",
                ok=False,
                component=source.name,
                error=str(exc),
            )
            raise SourceExtractionError(source.name, str(exc)) from exc
        os.replace(partial, final)
        duration_ms = int((time.monotonic() - started) * 1000)

        component_artifacts = _collect_artifacts(final, staging_dir)
        size = sum(artifact.size_bytes for artifact in component_artifacts)
        record = ComponentRecord(
            name=source.name,
            kind=source.kind.value,
            size_bytes=size,
            file_count=len(component_artifacts),
            empty=not component_artifacts,
            duration_ms=duration_ms,
        )
        records.append(record)
        artifacts.extend(component_artifacts)
        logger.event(
            event="component_extracted",
            phase="extract",
            ok=True,
            component=source.name,
            bytes=size,
            files=record.file_count,
            empty=record.empty,
            duration_ms=duration_ms,
        )

    manifest = BackupManifest(
        version=MANIFEST_VERSION,
        app_version=get_app_version(),
        created_utc=_utcnow(),
        context=context,
        components=[
            {
                "name": record.name,
                "kind": record.kind,
                "bytes": record.size_bytes,
                "files": record.file_count,
                "empty": record.empty,
            }
            for record in records
        ],
        files=[
            {"path": artifact.relative_path, "bytes": artifact.size_bytes, "sha256": artifact.sha256}
            for artifact in artifacts
        ],
    )
    _write_manifest(staging_dir / MANIFEST_NAME, manifest)
    return Snapshot(staging_dir=staging_dir, manifest=manifest, components=records, artifacts=artifacts)


__all__ = [
    "MANIFEST_NAME",
    "capture_snapshot",
    "load_manifest",
    "staging_directory",
    "verify_manifest_files",
]
