from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values

from .paths import get_default_settings_paths, get_dotenv_path, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "apply_environment",
    "as_bool",
    "load_environment",
    "load_settings",
    "merge_defaults",
]

SETTINGS_VERSION = 1


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup": {
        "context": "backup",
        "backup_dir": None,
        "encrypt": True,
        "kdf_iterations": 600_000,
        "rotate_after_backup": True,
        "lock_stale_after_s": 6 * 3600,
        "retention": {
            "daily": 14,
            "weekly": 12,
            "monthly": 12,
        },
    },
    "sources": {
        "database_url": None,
        "uploads_dir": None,
        "config_files": [".env", "docker-compose.yml"],
        "mongodump_path": "mongodump",
        "mongorestore_path": "mongorestore",
    },
    "health": {
        "api_url": "http://localhost:3000",
        "frontend_url": "http://localhost:80",
        "timeout_s": 5,
    },
    "maintenance": {
        "message": "We are currently performing maintenance. Please check back soon.",
        "whitelist_ips": [],
    },
    "offsite": {
        "host": None,
        "user": "root",
        "path": "/backups/storefront",
        "ssh_key": "~/.ssh/id_rsa",
        "max_age_hours": 24,
        "rsync_path": "rsync",
        "ssh_path": "ssh",
    },
}

# environment variable -> (section, key, caster)
_ENV_OVERRIDES = (
    ("BACKUP_CONTEXT", "backup", "context", str),
    ("BACKUP_DIR", "backup", "backup_dir", str),
    ("ENCRYPT_BACKUP", "backup", "encrypt", "bool"),
    ("BACKUP_KDF_ITERATIONS", "backup", "kdf_iterations", int),
    ("BACKUP_LOCK_STALE_AFTER_S", "backup", "lock_stale_after_s", int),
    ("MONGO_URI", "sources", "database_url", str),
    ("DATABASE_URL", "sources", "database_url", str),
    ("UPLOADS_DIR", "sources", "uploads_dir", str),
    ("API_URL", "health", "api_url", str),
    ("FRONTEND_URL", "health", "frontend_url", str),
    ("OFFSITE_HOST", "offsite", "host", str),
    ("OFFSITE_USER", "offsite", "user", str),
    ("OFFSITE_PATH", "offsite", "path", str),
    ("OFFSITE_SSH_KEY", "offsite", "ssh_key", str),
)

_RETENTION_ENV = (
    ("BACKUP_RETENTION_DAYS", "daily"),
    ("BACKUP_RETENTION_WEEKS", "weekly"),
    ("BACKUP_RETENTION_MONTHS", "monthly"),
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def load_environment(working_dir: Path, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Return ``.env`` values overlaid with the real process environment.

    The ``.env`` file never overrides a variable that is already exported.
    """

    merged: Dict[str, str] = {}
    dotenv_path = get_dotenv_path(working_dir)
    if dotenv_path.is_file():
        for key, value in dotenv_values(dotenv_path).items():
            if value is not None:
                merged[key] = value
    merged.update(os.environ if environ is None else environ)
    return merged


def as_bool(value: Any, default: bool = False) -> bool:
    """Read a flag that may come from JSON (bool) or text ("false", "0")."""

    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _cast(value: str, caster: Any) -> Any:
    if caster == "bool":
        return as_bool(value)
    return caster(value)


def apply_environment(settings: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    for env_key, section, key, caster in _ENV_OVERRIDES:
        raw = environ.get(env_key)
        if raw is None or raw == "":
            continue
        try:
            settings[section][key] = _cast(raw, caster)
        except (TypeError, ValueError):
            continue
    retention = settings["backup"]["retention"]
    for env_key, key in _RETENTION_ENV:
        raw = environ.get(env_key)
        if not raw:
            continue
        try:
            retention[key] = max(0, int(raw))
        except ValueError:
            continue
    return settings


def _log_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    logs_dir = get_logs_dir(working_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def load_settings(working_dir: Path, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    _log_unknown_keys(data, working_dir)
    merged = merge_defaults(data)
    merged = apply_environment(merged, load_environment(working_dir, environ))
    merged.setdefault("working_dir", str(working_dir))
    return merged
