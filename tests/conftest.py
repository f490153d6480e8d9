from __future__ import annotations

import hashlib
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from backup.config import BackupConfig, config_from_settings
from backup.envelope import Passphrase
from backup.sources import ComponentSource, ConfigSnapshotSource, FileTreeSource, SqliteDatabaseSource
from backup.types import ComponentKind
from core.settings import merge_defaults

TEST_ITERATIONS = 1000
TEST_PASSPHRASE = "correct horse battery staple"


class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def info(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):  # pragma: no cover - simple recorder
        self.events.append(("error", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):  # pragma: no cover - simple recorder
        self.events.append(("event", event, phase, ok, extra))

    def names(self, kind: Optional[str] = None) -> List[str]:
        return [entry[1] for entry in self.events if kind is None or entry[0] == kind]


@dataclass
class LiveEnv:
    root: Path
    db_path: Path
    uploads: Path
    config_dir: Path

    def sources(self) -> List[ComponentSource]:
        return [
            SqliteDatabaseSource(self.db_path),
            FileTreeSource(self.uploads),
            ConfigSnapshotSource(self.config_dir, [".env", "docker-compose.yml"]),
        ]

    def row_count(self) -> int:
        conn = sqlite3.connect(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]
        finally:
            conn.close()


def init_products_db(path: Path, rows: int = 25, blob_bytes: int = 0) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS products(id INTEGER PRIMARY KEY, name TEXT, image BLOB)")
        conn.executemany(
            "INSERT INTO products(name, image) VALUES (?, ?)",
            [(f"product-{index}", None) for index in range(rows)],
        )
        if blob_bytes:
            conn.execute("INSERT INTO products(name, image) VALUES (?, ?)", ("blob", os.urandom(blob_bytes)))
        conn.commit()
    finally:
        conn.close()


def build_live_env(root: Path, *, blob_sizes=(1024, 2048, 4096), db_blob_bytes: int = 0) -> LiveEnv:
    db_path = root / "data" / "app.sqlite"
    init_products_db(db_path, blob_bytes=db_blob_bytes)

    uploads = root / "uploads"
    (uploads / "products").mkdir(parents=True)
    for index, size in enumerate(blob_sizes):
        (uploads / "products" / f"photo-{index}.jpg").write_bytes(os.urandom(size))

    config_dir = root
    (config_dir / ".env").write_text("NODE_ENV=production\nSHOP_NAME=demo\n", encoding="utf-8")
    return LiveEnv(root=root, db_path=db_path, uploads=uploads, config_dir=config_dir)


def tree_digest(root: Path) -> Dict[str, str]:
    digests: Dict[str, str] = {}
    for item in sorted(root.rglob("*")):
        if item.is_file():
            digests[item.relative_to(root).as_posix()] = hashlib.sha256(item.read_bytes()).hexdigest()
    return digests


def make_config(
    working_dir: Path,
    *,
    passphrase: Optional[str] = TEST_PASSPHRASE,
    **backup,
) -> BackupConfig:
    settings = merge_defaults({"backup": {"context": "shop", "kdf_iterations": TEST_ITERATIONS, **backup}})
    return config_from_settings(
        settings,
        working_dir,
        passphrase=Passphrase(passphrase) if passphrase else None,
    )


class RecordingSource(ComponentSource):
    """Writes one marker file and records every inject call."""

    def __init__(self, name: str, kind: ComponentKind, journal: List[str], *, fail_inject: bool = False) -> None:
        super().__init__(name)
        self.kind = kind
        self.journal = journal
        self.fail_inject = fail_inject
        self.extracted = False

    def extract(self, target_dir: Path) -> None:
        self.extracted = True
        (target_dir / f"{self.name}.txt").write_text(f"payload for {self.name}", encoding="utf-8")

    def inject(self, source_dir: Path) -> None:
        if self.fail_inject:
            raise RuntimeError(f"{self.name} target is read-only")
        assert (source_dir / f"{self.name}.txt").read_text(encoding="utf-8") == f"payload for {self.name}"
        self.journal.append(self.name)


class FailingSource(ComponentSource):
    kind = ComponentKind.FILE_TREE

    def extract(self, target_dir: Path) -> None:
        raise RuntimeError("disk unplugged")


@pytest.fixture
def live_env(tmp_path: Path) -> LiveEnv:
    return build_live_env(tmp_path / "live")


@pytest.fixture
def stub_logger() -> StubLogger:
    return StubLogger()
