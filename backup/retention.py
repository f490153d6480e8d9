"""Retention policy enforcement for backup archives."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterable, List, Set, Tuple

from .logs import BackupLogger
from .package import parse_archive_name
from .types import RetentionSummary


@dataclass(slots=True)
class RetentionPolicy:
    daily: int = 14
    weekly: int = 12
    monthly: int = 12


@dataclass(slots=True)
class _ArchiveMeta:
    archive_id: str
    created: datetime
    paths: List[Path] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        total = 0
        for path in self.paths:
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total


def _load_archives(base: Path, context: str) -> List[_ArchiveMeta]:
    """Group archive files by id; plain and encrypted copies share one id."""

    items: Dict[str, _ArchiveMeta] = {}
    if not base.exists():
        return []
    for child in base.iterdir():
        if not child.is_file():
            continue
        parsed = parse_archive_name(child.name)
        if parsed is None or parsed.context != context:
            continue
        meta = items.setdefault(parsed.archive_id, _ArchiveMeta(parsed.archive_id, parsed.created))
        meta.paths.append(child)
    ordered = sorted(items.values(), key=lambda meta: (meta.created, meta.archive_id), reverse=True)
    return ordered


def _day(created: datetime) -> Hashable:
    return created.date()


def _iso_week(created: datetime) -> Hashable:
    year, week, _ = created.isocalendar()
    return (year, week)


def _month(created: datetime) -> Hashable:
    return (created.year, created.month)


_RULES: Tuple[Tuple[str, Callable[[datetime], Hashable]], ...] = (
    ("daily", _day),
    ("weekly", _iso_week),
    ("monthly", _month),
)


def plan_retention(
    items: List[_ArchiveMeta], policy: RetentionPolicy
) -> Tuple[Set[str], Dict[str, Set[str]]]:
    """Return the ids to keep and why.

    ``items`` must be ordered newest first so the latest archive claims each
    bucket. Buckets are counted over those that actually hold archives.
    """

    keep: Dict[str, Set[str]] = {}
    counts = {"daily": policy.daily, "weekly": policy.weekly, "monthly": policy.monthly}
    for rule, bucket_of in _RULES:
        limit = max(int(counts[rule]), 0)
        if limit == 0:
            continue
        seen: Set[Hashable] = set()
        for meta in items:
            bucket = bucket_of(meta.created)
            if bucket in seen:
                continue
            seen.add(bucket)
            keep.setdefault(meta.archive_id, set()).add(rule)
            if len(seen) >= limit:
                break
    return set(keep.keys()), keep


def apply_retention(
    backups_dir: Path,
    context: str,
    policy: RetentionPolicy,
    *,
    logger: BackupLogger,
    protected: Iterable[str] = (),
    dry_run: bool = False,
) -> RetentionSummary:
    items = _load_archives(backups_dir, context)
    keep_ids, reasons = plan_retention(items, policy)
    protected_ids = sorted(set(protected) & {meta.archive_id for meta in items})
    for archive_id in protected_ids:
        if archive_id not in keep_ids:
            keep_ids.add(archive_id)
            reasons.setdefault(archive_id, set()).add("restore-in-progress")

    removed: List[str] = []
    freed = 0
    for meta in items:
        if meta.archive_id in keep_ids:
            continue
        size = meta.size_bytes
        if dry_run:
            removed.append(meta.archive_id)
            freed += size
            continue
        failed = False
        for path in meta.paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                failed = True
                logger.error("backup_remove_failed", id=meta.archive_id, path=str(path), error=str(exc))
        if failed:
            keep_ids.add(meta.archive_id)
            continue
        removed.append(meta.archive_id)
        freed += size
        logger.warning("backup_removed", id=meta.archive_id, reason="retention")

    kept = [meta.archive_id for meta in items if meta.archive_id not in removed]
    logger.event(
        event="retention_applied",
        phase="retention",
        ok=True,
        context=context,
        removed=len(removed),
        kept=len(kept),
        dry_run=dry_run,
    )
    return RetentionSummary(
        removed=removed,
        kept=kept,
        freed_bytes=freed,
        reasons={key: sorted(value) for key, value in reasons.items()},
        protected=protected_ids,
        dry_run=dry_run,
    )


__all__ = ["RetentionPolicy", "apply_retention", "plan_retention"]
