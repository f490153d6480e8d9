from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "backup_sqlite",
    "connect",
    "quick_check",
]

DEFAULT_BUSY_TIMEOUT_MS = 5000


def connect(db_path: str | Path, *, read_only: bool = False, timeout: float = 5.0) -> sqlite3.Connection:
    """Open ``db_path``; read-only handles never create the file."""

    path = Path(db_path)
    if read_only:
        conn = sqlite3.connect(f"file:{path.resolve().as_posix()}?mode=ro", uri=True, timeout=timeout)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute(f"PRAGMA busy_timeout={int(DEFAULT_BUSY_TIMEOUT_MS)}")
    return conn


def quick_check(db_path: str | Path) -> Optional[str]:
    """Return ``None`` when ``PRAGMA quick_check`` passes, else the first finding."""

    conn = connect(db_path, read_only=True)
    try:
        row = conn.execute("PRAGMA quick_check").fetchone()
    finally:
        conn.close()
    if row and str(row[0]).lower() != "ok":
        return str(row[0])
    return None


def backup_sqlite(source: str | Path, destination: str | Path, *, pages: int = 0) -> None:
    """Copy ``source`` page by page into ``destination`` with the online backup API.

    The source is opened read-only so a dump never changes the live file, and
    the destination is overwritten in place, which is how a restore replaces
    a live database without closing other readers.
    """

    source_conn = connect(source, read_only=True)
    try:
        destination_conn = connect(destination)
        try:
            source_conn.backup(destination_conn, pages=pages)
        finally:
            destination_conn.close()
    finally:
        source_conn.close()
