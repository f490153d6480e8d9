"""Restore archives into the live data stores, one component at a time."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from core.fsutil import atomic_write_json, read_json

from .envelope import ENVELOPE_SUFFIX, Passphrase, open_envelope
from .errors import (
    AbortedUnconfirmed,
    BackupError,
    ConfigurationError,
    InjectionError,
    RunCancelledError,
)
from .logs import BackupLogger
from .package import ARCHIVE_SUFFIX, parse_archive_name, unpack_archive
from .snapshot import MANIFEST_NAME, load_manifest, staging_directory, verify_manifest_files
from .sources import ComponentSource
from .types import INJECTION_ORDER, RestoreOutcome, RestoreResult

CONFIRMATION_TOKEN = "RESTORE"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def archive_id_of(path: Path) -> str:
    parsed = parse_archive_name(path.name)
    if parsed is not None:
        return parsed.archive_id
    name = path.name
    for suffix in (ENVELOPE_SUFFIX, ARCHIVE_SUFFIX):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


class RestoreJobStore:
    """Persist the progress of the current restore so it survives crashes."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[dict]:
        try:
            return read_json(self.path)
        except ValueError:
            return None

    def active_archive_ids(self) -> List[str]:
        record = self.load()
        if record and record.get("status") == "running" and record.get("archive_id"):
            return [str(record["archive_id"])]
        return []

    def completed_for(self, archive_id: str) -> List[str]:
        record = self.load()
        if not record or record.get("archive_id") != archive_id:
            return []
        return [str(name) for name in record.get("completed", [])]

    def start(self, archive: Path, archive_id: str, requested: Sequence[str], completed: Sequence[str]) -> dict:
        record = {
            "job_id": uuid.uuid4().hex,
            "archive": str(archive),
            "archive_id": archive_id,
            "status": "running",
            "requested": list(requested),
            "completed": list(completed),
            "failed": None,
            "started_utc": _utcnow(),
            "updated_utc": _utcnow(),
        }
        atomic_write_json(self.path, record)
        return record

    def update(self, record: dict, **changes: object) -> dict:
        record.update(changes)
        record["updated_utc"] = _utcnow()
        atomic_write_json(self.path, record)
        return record


def require_confirmation(token: Optional[str]) -> None:
    if token != CONFIRMATION_TOKEN:
        raise AbortedUnconfirmed("restore needs explicit confirmation (--confirm)")


def order_sources(sources: Sequence[ComponentSource], requested: Optional[Iterable[str]]) -> List[ComponentSource]:
    """Select ``requested`` components and order them database, files, config."""

    by_name: Dict[str, ComponentSource] = {source.name: source for source in sources}
    if requested:
        wanted = list(dict.fromkeys(requested))
        unknown = [name for name in wanted if name not in by_name]
        if unknown:
            raise ConfigurationError(
                f"unknown component(s) {', '.join(unknown)}; expected one of {', '.join(by_name)}"
            )
        selected = [by_name[name] for name in wanted]
    else:
        selected = list(sources)
    rank = {kind: index for index, kind in enumerate(INJECTION_ORDER)}
    return sorted(selected, key=lambda source: rank.get(source.kind, len(rank)))


def restore_archive(
    archive_path: Path,
    *,
    passphrase: Optional[Passphrase],
    confirmation_token: Optional[str],
    sources: Sequence[ComponentSource],
    staging_root: Path,
    logger: BackupLogger,
    job_store: RestoreJobStore,
    components: Optional[Iterable[str]] = None,
    dry_run: bool = False,
    resume: bool = False,
) -> RestoreResult:
    """Open, unpack and inject ``archive_path``.

    Without the confirmation token nothing is opened or written and the
    result is ``aborted-unconfirmed``. A dry run needs no token and only
    reports the plan.
    """

    archive_path = Path(archive_path)
    if not dry_run:
        try:
            require_confirmation(confirmation_token)
        except AbortedUnconfirmed as exc:
            logger.warning("restore_unconfirmed", archive=str(archive_path), reason=str(exc))
            return RestoreResult(outcome=RestoreOutcome.ABORTED_UNCONFIRMED, archive=archive_path)
    if not archive_path.is_file():
        raise FileNotFoundError(f"backup not found: {archive_path}")

    ordered = order_sources(sources, components)
    archive_id = archive_id_of(archive_path)
    logger.event(event="restore_start", phase="restore", ok=True, archive=str(archive_path), dry_run=dry_run)

    with staging_directory(staging_root, logger=logger, prefix="restore-") as staging:
        if archive_path.name.endswith(ENVELOPE_SUFFIX):
            plain = open_envelope(archive_path, passphrase, output_path=staging / "archive.tar.gz", logger=logger)
        else:
            plain = archive_path
        content = unpack_archive(plain, staging / "content")
        manifest = load_manifest(content / MANIFEST_NAME)
        verified = verify_manifest_files(content, manifest)
        logger.info("restore_manifest_verified", archive=archive_id, files=verified)

        empty = {
            str(entry.get("name"))
            for entry in manifest.get("components", [])
            if isinstance(entry, dict) and entry.get("empty")
        }
        plan: List[ComponentSource] = []
        skipped: List[str] = []
        for source in ordered:
            present = (content / source.name).is_dir()
            if not present and components:
                raise BackupError(f"component '{source.name}' is not part of {archive_id}")
            if not present or source.name in empty:
                logger.warning("component_not_in_backup", component=source.name, empty=source.name in empty)
                skipped.append(source.name)
                continue
            plan.append(source)

        if dry_run:
            planned = [source.name for source in plan]
            logger.info("restore_plan", archive=archive_id, components=planned, skipped=skipped)
            return RestoreResult(
                outcome=RestoreOutcome.SUCCEEDED,
                archive=archive_path,
                planned=planned,
                skipped=skipped,
                dry_run=True,
            )

        done = job_store.completed_for(archive_id) if resume else []
        record = job_store.start(archive_path, archive_id, [source.name for source in plan], done)
        restored: List[str] = []
        for index, source in enumerate(plan):
            if source.name in done:
                logger.info("component_resume_skip", component=source.name)
                skipped.append(source.name)
                continue
            logger.info("component_inject_start", component=source.name, kind=source.kind.value)
            try:
                source.inject(content / source.name)
            except RunCancelledError:
                job_store.update(record, status="failed", failed=source.name)
                raise
            except Exception as exc:
                job_store.update(record, status="failed", failed=source.name)
                pending = [item.name for item in plan[index + 1 :]]
                logger.event(
                    event="component_inject_failed",
                    phase="restore",
                    ok=False,
                    component=source.name,
                    succeeded=restored,
                    pending=pending,
                    error=str(exc),
                )
                raise InjectionError(source.name, str(exc), succeeded=restored, pending=pending) from exc
            restored.append(source.name)
            job_store.update(record, completed=list(dict.fromkeys([*record["completed"], source.name])))
            logger.event(event="component_injected", phase="restore", ok=True, component=source.name)

        job_store.update(record, status="succeeded")

    logger.event(event="restore_complete", phase="restore", ok=True, archive=archive_id, restored=restored)
    return RestoreResult(
        outcome=RestoreOutcome.SUCCEEDED,
        archive=archive_path,
        restored=restored,
        skipped=skipped,
    )


__all__ = [
    "CONFIRMATION_TOKEN",
    "RestoreJobStore",
    "archive_id_of",
    "order_sources",
    "require_confirmation",
    "restore_archive",
]
