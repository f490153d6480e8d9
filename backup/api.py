"""Public API for backup operations."""
from __future__ import annotations

import contextlib
import hashlib
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from core.paths import get_locks_dir, get_maintenance_flag_path, get_restore_job_path, get_staging_root
from health.checks import HealthReport, HealthTargets
from health.run import run_health_checks
from maintenance.flag import MaintenanceCoordinator, MaintenanceStore

from .config import BackupConfig, load_config
from .envelope import Passphrase, open_envelope, seal
from .errors import BackupError, MissingPassphraseError, RunLockHeldError
from .lock import RunLock
from .logs import BackupLogger, ops_logger
from .offsite import OffsiteResult, OffsiteTarget, Runner, push_offsite
from .package import pack_directory, parse_archive_name
from .restore import CONFIRMATION_TOKEN, RestoreJobStore, restore_archive
from .retention import apply_retention
from .snapshot import capture_snapshot, staging_directory
from .sources import ComponentSource, default_sources
from .types import (
    BackupResult,
    BackupSummary,
    RestoreResult,
    RetentionSummary,
    StageResult,
    VerificationReport,
)
from .verify import cleanup_leftovers, run_self_test


class _MaintenanceWindow(contextlib.AbstractContextManager):
    """Hold maintenance mode around a restore.

    A failed restore leaves the flag active so the service stays protected
    until an operator exits maintenance by hand.
    """

    def __init__(self, coordinator: Optional[MaintenanceCoordinator], logger: BackupLogger, reason: str) -> None:
        self._coordinator = coordinator
        self._logger = logger
        self._reason = reason

    def __enter__(self) -> None:
        if not self._coordinator:
            return None
        self._coordinator.enter(self._reason)
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self._coordinator:
            return False
        if exc is None:
            self._coordinator.exit()
        else:
            self._logger.warning(
                "maintenance_left_active",
                phase="restore",
                error=f"{type(exc).__name__}: {exc}",
            )
        return False


class BackupService:
    """Coordinate backup, encryption, restore, retention and maintenance workflows."""

    def __init__(
        self,
        config: Optional[BackupConfig] = None,
        *,
        working_dir: Optional[Path] = None,
        sources: Optional[Sequence[ComponentSource]] = None,
        health_check: Optional[Callable[[], object]] = None,
    ) -> None:
        self._config = config or load_config(working_dir)
        self._logger = BackupLogger(self._config.working_dir)
        self._sources = list(sources) if sources is not None else None
        self._health_check = health_check
        self._job_store = RestoreJobStore(get_restore_job_path(self._config.state_dir))

    # ------------------------------------------------------------------
    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def logger(self) -> BackupLogger:
        return self._logger

    @property
    def job_store(self) -> RestoreJobStore:
        return self._job_store

    def sources(self) -> List[ComponentSource]:
        if self._sources is None:
            self._sources = default_sources(self._config)
        return list(self._sources)

    # ------------------------------------------------------------------
    def data_store_key(self) -> str:
        """Fingerprint of the live state the sources read and write.

        Contexts sharing a database and uploads tree share this key even
        though their archives and context locks are separate.
        """

        described = sorted(f"{source.kind.value}:{source.describe()}" for source in self.sources())
        return hashlib.sha256("\n".join(described).encode("utf-8")).hexdigest()[:16]

    def _lock(self, purpose: str) -> RunLock:
        path = get_locks_dir(self._config.state_dir) / f"{self._config.context}.lock"
        return RunLock(
            path,
            purpose=purpose,
            logger=self._logger,
            stale_after_s=self._config.lock_stale_after_s,
            extra={"context": self._config.context, "store": self.data_store_key()},
        )

    def _store_lock(self, purpose: str) -> RunLock:
        path = get_locks_dir(self._config.state_dir) / f"store-{self.data_store_key()}.lock"
        return RunLock(
            path,
            purpose=purpose,
            logger=self._logger,
            stale_after_s=self._config.lock_stale_after_s,
            extra={"context": self._config.context, "store": self.data_store_key()},
        )

    def _refuse_if_restoring(self) -> None:
        holder = self._store_lock("backup").active_holder()
        if holder is not None:
            raise RunLockHeldError(
                f"a restore from context '{holder.get('context', '?')}' is rewriting this data store "
                f"(pid {holder.get('pid', '?')} on {holder.get('host', '?')})",
                holder=holder,
            )

    def _refuse_if_backing_up(self) -> None:
        key = self.data_store_key()
        own = f"{self._config.context}.lock"
        for path in sorted(get_locks_dir(self._config.state_dir).glob("*.lock")):
            if path.name == own or path.name.startswith("store-"):
                continue
            holder = RunLock(
                path,
                purpose="restore",
                logger=self._logger,
                stale_after_s=self._config.lock_stale_after_s,
            ).active_holder()
            if holder and holder.get("store") == key and holder.get("purpose") == "backup":
                raise RunLockHeldError(
                    f"a backup of context '{holder.get('context', path.stem)}' is reading this data store "
                    f"(pid {holder.get('pid', '?')} on {holder.get('host', '?')})",
                    holder=holder,
                )

    def _staging_root(self) -> Path:
        return get_staging_root(self._config.state_dir, self._config.context)

    def _passphrase(self, override: Optional[Passphrase] = None) -> Optional[Passphrase]:
        return override if override is not None else self._config.passphrase

    def _run_health_check(self) -> HealthReport:
        targets = HealthTargets(
            working_dir=self._config.working_dir,
            api_url=self._config.health.get("api_url"),
            frontend_url=self._config.health.get("frontend_url"),
            database_url=self._config.database_url,
            timeout_s=float(self._config.health.get("timeout_s") or 5),
        )
        return run_health_checks(self._config.working_dir, targets=targets)

    def maintenance(self) -> MaintenanceCoordinator:
        store = MaintenanceStore(get_maintenance_flag_path(self._config.state_dir))
        return MaintenanceCoordinator(
            store,
            logger=ops_logger(self._config.working_dir),
            health_check=self._health_check or self._run_health_check,
        )

    # ------------------------------------------------------------------
    def run_backup(self, *, encrypt: Optional[bool] = None, rotate: Optional[bool] = None) -> BackupResult:
        """Capture, package, seal and rotate under the context's run lock."""

        do_encrypt = self._config.encrypt if encrypt is None else encrypt
        do_rotate = self._config.rotate_after_backup if rotate is None else rotate
        passphrase = self._passphrase()
        if do_encrypt and not passphrase:
            raise MissingPassphraseError("encryption is enabled but BACKUP_PASSPHRASE is not set")

        stages: List[StageResult] = []
        current = "lock"
        self._logger.event(event="backup_start", phase="backup", ok=True, context=self._config.context)
        try:
            with self._lock("backup"):
                self._refuse_if_restoring()
                stages.append(StageResult(stage="lock", ok=True))
                with staging_directory(self._staging_root(), logger=self._logger) as staging:
                    current = "extract"
                    snapshot = capture_snapshot(
                        self.sources(),
                        staging,
                        context=self._config.context,
                        logger=self._logger,
                    )
                    stages.append(StageResult(stage="extract", ok=True, detail=f"{len(snapshot.components)} components"))
                    current = "package"
                    archive = pack_directory(
                        staging,
                        self._config.backups_dir,
                        context=self._config.context,
                        logger=self._logger,
                    )
                    stages.append(StageResult(stage="package", ok=True, detail=archive.name))

                if do_encrypt:
                    current = "encrypt"
                    archive = seal(archive, passphrase, iterations=self._config.kdf_iterations, logger=self._logger)
                    stages.append(StageResult(stage="encrypt", ok=True, detail=archive.name))

                retention: Optional[RetentionSummary] = None
                if do_rotate:
                    current = "rotate"
                    try:
                        retention = self._apply_retention_locked(dry_run=False)
                        stages.append(StageResult(stage="rotate", ok=True, detail=f"removed {len(retention.removed)}"))
                    except (OSError, BackupError) as exc:
                        self._logger.warning("rotation_failed", phase="rotate", error=str(exc))
                        stages.append(
                            StageResult(stage="rotate", ok=False, detail=str(exc), error_kind=type(exc).__name__)
                        )
        except (BackupError, OSError) as exc:
            stages.append(StageResult(stage=current, ok=False, detail=str(exc), error_kind=type(exc).__name__))
            self._logger.event(
                event="backup_failed",
                phase=current,
                ok=False,
                context=self._config.context,
                error_kind=type(exc).__name__,
                error=str(exc),
            )
            raise

        parsed = parse_archive_name(archive.name)
        result = BackupResult(
            archive_id=parsed.archive_id if parsed else archive.name,
            archive_path=archive,
            encrypted=do_encrypt,
            size_bytes=archive.stat().st_size,
            manifest=snapshot.manifest,
            stages=stages,
            retention=retention,
        )
        self._logger.event(
            event="backup_complete",
            phase="backup",
            ok=True,
            id=result.archive_id,
            path=str(archive),
            size=result.size_bytes,
            encrypted=do_encrypt,
        )
        return result

    # ------------------------------------------------------------------
    def encrypt_archive(self, archive_path: Path, *, passphrase: Optional[Passphrase] = None) -> Path:
        return seal(
            Path(archive_path),
            self._passphrase(passphrase),
            iterations=self._config.kdf_iterations,
            logger=self._logger,
        )

    def decrypt_archive(
        self,
        envelope_path: Path,
        output_path: Optional[Path] = None,
        *,
        passphrase: Optional[Passphrase] = None,
    ) -> Path:
        return open_envelope(
            Path(envelope_path),
            self._passphrase(passphrase),
            output_path=Path(output_path) if output_path else None,
            logger=self._logger,
        )

    # ------------------------------------------------------------------
    def restore(
        self,
        archive_path: Path,
        *,
        confirmation_token: Optional[str],
        components: Optional[Iterable[str]] = None,
        dry_run: bool = False,
        resume: bool = False,
        maintenance: bool = False,
        passphrase: Optional[Passphrase] = None,
    ) -> RestoreResult:
        archive_path = Path(archive_path)
        if not dry_run and confirmation_token != CONFIRMATION_TOKEN:
            return restore_archive(
                archive_path,
                passphrase=None,
                confirmation_token=confirmation_token,
                sources=(),
                staging_root=self._staging_root(),
                logger=self._logger,
                job_store=self._job_store,
            )

        requested = list(components) if components else None
        options = dict(
            passphrase=self._passphrase(passphrase),
            sources=self.sources(),
            staging_root=self._staging_root(),
            logger=self._logger,
            job_store=self._job_store,
            components=requested,
            resume=resume,
        )
        if dry_run:
            return restore_archive(archive_path, confirmation_token=confirmation_token, dry_run=True, **options)

        coordinator = self.maintenance() if maintenance else None
        with self._lock("restore"), self._store_lock("restore"):
            self._refuse_if_backing_up()
            with _MaintenanceWindow(coordinator, self._logger, f"Restoring {archive_path.name}"):
                result = restore_archive(archive_path, confirmation_token=confirmation_token, **options)
        return result

    # ------------------------------------------------------------------
    def _apply_retention_locked(self, *, dry_run: bool) -> RetentionSummary:
        return apply_retention(
            self._config.backups_dir,
            self._config.context,
            self._config.retention,
            logger=self._logger,
            protected=self._job_store.active_archive_ids(),
            dry_run=dry_run,
        )

    def apply_retention(self, *, dry_run: bool = False) -> RetentionSummary:
        with self._lock("rotate"):
            return self._apply_retention_locked(dry_run=dry_run)

    # ------------------------------------------------------------------
    def list_backups(self) -> List[BackupSummary]:
        summaries: List[BackupSummary] = []
        base = self._config.backups_dir
        if not base.is_dir():
            return summaries
        for child in base.iterdir():
            parsed = parse_archive_name(child.name)
            if parsed is None or not child.is_file():
                continue
            summaries.append(
                BackupSummary(
                    id=parsed.archive_id,
                    context=parsed.context,
                    created_utc=parsed.created.isoformat(),
                    size_bytes=child.stat().st_size,
                    encrypted=parsed.encrypted,
                    path=child,
                )
            )
        summaries.sort(key=lambda item: (item.created_utc, item.id, item.encrypted), reverse=True)
        return summaries

    # ------------------------------------------------------------------
    def self_test(self, *, live: bool = False) -> VerificationReport:
        work_root = self._config.state_dir / "selftest"
        removed = cleanup_leftovers(work_root)
        if removed:
            self._logger.warning("self_test_leftovers_removed", count=removed)
        return run_self_test(
            work_root,
            logger=self._logger,
            passphrase=self._config.passphrase,
            sources=self.sources() if live else None,
            kdf_iterations=self._config.kdf_iterations,
        )

    # ------------------------------------------------------------------
    def push_offsite(self, *, runner: Optional[Runner] = None) -> OffsiteResult:
        target = OffsiteTarget.from_settings(self._config.offsite)
        return push_offsite(self._config.backups_dir, target, logger=self._logger, runner=runner)

    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._config.passphrase is not None:
            self._config.passphrase.wipe()

    def __enter__(self) -> "BackupService":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


__all__ = ["BackupService"]
