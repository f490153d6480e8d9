"""Typed view over the merged backup settings."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.paths import (
    get_backups_dir,
    get_context_backups_dir,
    get_state_dir,
    get_uploads_dir,
    resolve_working_dir,
    safe_label,
)
from core.settings import as_bool, load_environment, load_settings

from .envelope import DEFAULT_ITERATIONS, MIN_ITERATIONS, Passphrase
from .errors import ConfigurationError
from .retention import RetentionPolicy


@dataclass(slots=True)
class BackupConfig:
    working_dir: Path
    context: str
    backups_dir: Path
    state_dir: Path
    encrypt: bool = True
    kdf_iterations: int = DEFAULT_ITERATIONS
    rotate_after_backup: bool = True
    lock_stale_after_s: float = 6 * 3600
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    database_url: Optional[str] = None
    uploads_dir: Optional[Path] = None
    config_files: List[str] = field(default_factory=list)
    mongodump_path: str = "mongodump"
    mongorestore_path: str = "mongorestore"
    health: Dict[str, Any] = field(default_factory=dict)
    maintenance: Dict[str, Any] = field(default_factory=dict)
    offsite: Dict[str, Any] = field(default_factory=dict)
    passphrase: Optional[Passphrase] = field(default=None, repr=False)

    def for_context(self, context: str) -> "BackupConfig":
        """Return a copy pointed at another context's archive directory."""

        label = safe_label(context)
        return BackupConfig(
            working_dir=self.working_dir,
            context=label,
            backups_dir=get_context_backups_dir(self.backups_dir.parent, label),
            state_dir=self.state_dir,
            encrypt=self.encrypt,
            kdf_iterations=self.kdf_iterations,
            rotate_after_backup=self.rotate_after_backup,
            lock_stale_after_s=self.lock_stale_after_s,
            retention=self.retention,
            database_url=self.database_url,
            uploads_dir=self.uploads_dir,
            config_files=list(self.config_files),
            mongodump_path=self.mongodump_path,
            mongorestore_path=self.mongorestore_path,
            health=dict(self.health),
            maintenance=dict(self.maintenance),
            offsite=dict(self.offsite),
            passphrase=self.passphrase,
        )


def _resolve(working_dir: Path, value: Optional[str], default: Path) -> Path:
    if not value:
        return default
    path = Path(os.path.expandvars(os.path.expanduser(str(value))))
    return path if path.is_absolute() else working_dir / path


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def config_from_settings(
    settings: Mapping[str, Any],
    working_dir: Path,
    *,
    passphrase: Optional[Passphrase] = None,
) -> BackupConfig:
    backup = settings.get("backup") or {}
    sources = settings.get("sources") or {}
    retention_raw = backup.get("retention") or {}

    context = safe_label(str(backup.get("context") or "backup"))
    backups_root = _resolve(working_dir, backup.get("backup_dir"), get_backups_dir(working_dir))
    iterations = _as_int(backup.get("kdf_iterations", DEFAULT_ITERATIONS), "kdf_iterations")
    if iterations < MIN_ITERATIONS:
        raise ConfigurationError(f"kdf_iterations must be at least {MIN_ITERATIONS}")
    retention = RetentionPolicy(
        daily=max(0, _as_int(retention_raw.get("daily", 14), "retention.daily")),
        weekly=max(0, _as_int(retention_raw.get("weekly", 12), "retention.weekly")),
        monthly=max(0, _as_int(retention_raw.get("monthly", 12), "retention.monthly")),
    )
    config_files = sources.get("config_files")
    if not isinstance(config_files, list):
        config_files = []

    return BackupConfig(
        working_dir=working_dir,
        context=context,
        backups_dir=get_context_backups_dir(backups_root, context),
        state_dir=get_state_dir(working_dir),
        encrypt=as_bool(backup.get("encrypt"), True),
        kdf_iterations=iterations,
        rotate_after_backup=as_bool(backup.get("rotate_after_backup"), True),
        lock_stale_after_s=float(backup.get("lock_stale_after_s") or 6 * 3600),
        retention=retention,
        database_url=sources.get("database_url") or None,
        uploads_dir=_resolve(working_dir, sources.get("uploads_dir"), get_uploads_dir(working_dir)),
        config_files=[str(item) for item in config_files],
        mongodump_path=str(sources.get("mongodump_path") or "mongodump"),
        mongorestore_path=str(sources.get("mongorestore_path") or "mongorestore"),
        health=dict(settings.get("health") or {}),
        maintenance=dict(settings.get("maintenance") or {}),
        offsite=dict(settings.get("offsite") or {}),
        passphrase=passphrase,
    )


def load_config(
    working_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BackupConfig:
    """Load ``settings.json``, ``.env`` and the environment into a :class:`BackupConfig`."""

    root = Path(working_dir) if working_dir else resolve_working_dir()
    settings = load_settings(root, environ)
    env = load_environment(root, environ)
    return config_from_settings(settings, root, passphrase=Passphrase.from_env(env))


__all__ = ["BackupConfig", "config_from_settings", "load_config"]
