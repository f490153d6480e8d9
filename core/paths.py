from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

__all__ = [
    "ensure_working_dir_structure",
    "get_backups_dir",
    "get_context_backups_dir",
    "get_default_settings_paths",
    "get_dotenv_path",
    "get_locks_dir",
    "get_logs_dir",
    "get_maintenance_flag_path",
    "get_restore_job_path",
    "get_staging_root",
    "get_state_dir",
    "get_storage_dir",
    "get_uploads_dir",
    "resolve_working_dir",
    "safe_label",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_HOME_ENV = "STOREFRONT_HOME"


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def resolve_working_dir(override: Optional[str | os.PathLike[str]] = None) -> Path:
    """Resolve the service root that holds ``storage/`` and the config files."""

    if override:
        return _expand_path(str(override))
    env_home = os.environ.get(_HOME_ENV)
    if env_home:
        try:
            return _expand_path(env_home)
        except Exception:
            pass
    return Path.cwd().resolve()


def get_storage_dir(working_dir: Path) -> Path:
    return working_dir / "storage"


def get_backups_dir(working_dir: Path) -> Path:
    return get_storage_dir(working_dir) / "backups"


def get_context_backups_dir(backups_dir: Path, context: str) -> Path:
    return backups_dir / safe_label(context)


def get_logs_dir(working_dir: Path) -> Path:
    return get_storage_dir(working_dir) / "logs"


def get_state_dir(working_dir: Path) -> Path:
    return get_storage_dir(working_dir) / "state"


def get_staging_root(state_dir: Path, context: str) -> Path:
    return state_dir / "staging" / safe_label(context)


def get_locks_dir(state_dir: Path) -> Path:
    return state_dir / "locks"


def get_maintenance_flag_path(state_dir: Path) -> Path:
    return state_dir / "maintenance.json"


def get_restore_job_path(state_dir: Path) -> Path:
    return state_dir / "restore_job.json"


def get_uploads_dir(working_dir: Path) -> Path:
    return get_storage_dir(working_dir) / "uploads"


def get_dotenv_path(working_dir: Path) -> Path:
    return working_dir / ".env"


_SAFE_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9-]+")


def safe_label(label: str) -> str:
    """Return a filesystem-safe context label.

    Underscores are folded as well because archive names use ``_`` to
    separate the context from the timestamp.
    """

    cleaned = _SAFE_LABEL_PATTERN.sub("-", label.strip()).strip("-")
    return cleaned or "backup"


def ensure_working_dir_structure(working_dir: Path) -> None:
    for directory in (
        get_storage_dir(working_dir),
        get_backups_dir(working_dir),
        get_logs_dir(working_dir),
        get_state_dir(working_dir),
    ):
        directory.mkdir(parents=True, exist_ok=True)


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    return [
        get_storage_dir(working_dir) / "settings.json",
        working_dir / "settings.json",
        _PROJECT_ROOT / "settings.json",
    ]
