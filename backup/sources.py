"""Component source adapters: extract one slice of state, inject it back."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import urlsplit

from core.db import backup_sqlite, quick_check
from core.logging_utils import redact_uri

from .errors import ConfigurationError
from .types import ComponentKind

LOGGER = logging.getLogger("storefront.backup.sources")

SQLITE_DUMP_NAME = "database.sqlite"
MONGO_ARCHIVE_NAME = "mongo.archive.gz"


def _stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


class ComponentSource:
    """A named producer/consumer of one slice of persistent state.

    ``extract`` writes into an empty directory owned by the caller; a missing
    source leaves that directory empty. ``inject`` replaces the live state
    from a directory produced by ``extract``.
    """

    kind: ComponentKind

    def __init__(self, name: str) -> None:
        self.name = name

    def extract(self, target_dir: Path) -> None:
        raise NotImplementedError

    def inject(self, source_dir: Path) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"


class SqliteDatabaseSource(ComponentSource):
    kind = ComponentKind.DATABASE

    def __init__(self, db_path: Path, *, name: str = "database") -> None:
        super().__init__(name)
        self.db_path = Path(db_path)

    def describe(self) -> str:
        return f"sqlite:{self.db_path}"

    def extract(self, target_dir: Path) -> None:
        if not self.db_path.exists():
            LOGGER.warning("Database file %s not found; recording an empty component", self.db_path)
            return
        dest = target_dir / SQLITE_DUMP_NAME
        backup_sqlite(self.db_path, dest)
        finding = quick_check(dest)
        if finding:
            raise RuntimeError(f"quick_check failed for dump of {self.db_path}: {finding}")

    def inject(self, source_dir: Path) -> None:
        dump = source_dir / SQLITE_DUMP_NAME
        if not dump.exists():
            raise FileNotFoundError(f"{SQLITE_DUMP_NAME} missing from restored component")
        finding = quick_check(dump)
        if finding:
            raise RuntimeError(f"quick_check failed for {dump.name}: {finding}")
        backup_sqlite(dump, self.db_path)


class MongoDumpSource(ComponentSource):
    """Drive ``mongodump``/``mongorestore`` against a connection string."""

    kind = ComponentKind.DATABASE

    def __init__(
        self,
        uri: str,
        *,
        name: str = "database",
        dump_binary: str = "mongodump",
        restore_binary: str = "mongorestore",
    ) -> None:
        super().__init__(name)
        self._uri = uri
        self.dump_binary = dump_binary
        self.restore_binary = restore_binary

    def describe(self) -> str:
        return f"mongodb:{redact_uri(self._uri)}"

    def _run(self, binary: str, args: Sequence[str]) -> None:
        executable = shutil.which(binary)
        if executable is None:
            raise FileNotFoundError(f"{binary} not found; install the MongoDB database tools")
        command = [executable, f"--uri={self._uri}", *args]
        proc = subprocess.run(command, capture_output=True, text=True, check=False)
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip().splitlines()
            tail = stderr[-1] if stderr else "no output"
            raise RuntimeError(f"{binary} exited with {proc.returncode}: {tail}")

    def extract(self, target_dir: Path) -> None:
        archive = target_dir / MONGO_ARCHIVE_NAME
        self._run(self.dump_binary, [f"--archive={archive}", "--gzip"])

    def inject(self, source_dir: Path) -> None:
        archive = source_dir / MONGO_ARCHIVE_NAME
        if not archive.exists():
            raise FileNotFoundError(f"{MONGO_ARCHIVE_NAME} missing from restored component")
        self._run(self.restore_binary, [f"--archive={archive}", "--gzip", "--drop"])


class FileTreeSource(ComponentSource):
    """Mirror a directory tree such as the uploads folder."""

    kind = ComponentKind.FILE_TREE

    def __init__(self, root: Path, *, name: str = "uploads") -> None:
        super().__init__(name)
        self.root = Path(root)

    def describe(self) -> str:
        return str(self.root)

    def extract(self, target_dir: Path) -> None:
        if not self.root.is_dir():
            LOGGER.warning("Directory %s not found; recording an empty component", self.root)
            return
        # links are stored as the files they point at; the archive never carries link entries
        shutil.copytree(
            self.root,
            target_dir,
            symlinks=False,
            ignore_dangling_symlinks=True,
            dirs_exist_ok=True,
        )

    def inject(self, source_dir: Path) -> None:
        """Replace the live tree so it mirrors ``source_dir`` exactly.

        The new tree is built beside the live one and swapped in with
        renames; the previous tree is put back if the swap fails.
        """

        self.root.parent.mkdir(parents=True, exist_ok=True)
        incoming = self.root.with_name(f"{self.root.name}.restore-{os.getpid()}")
        previous = self.root.with_name(f"{self.root.name}.pre-restore-{_stamp()}")
        shutil.rmtree(incoming, ignore_errors=True)
        shutil.copytree(source_dir, incoming, symlinks=True)
        had_previous = self.root.exists()
        try:
            if had_previous:
                os.replace(self.root, previous)
            os.replace(incoming, self.root)
        except OSError:
            if had_previous and previous.exists() and not self.root.exists():
                os.replace(previous, self.root)
            shutil.rmtree(incoming, ignore_errors=True)
            raise
        if had_previous:
            shutil.rmtree(previous, ignore_errors=True)


class ConfigSnapshotSource(ComponentSource):
    """Snapshot a fixed list of configuration files relative to a base dir."""

    kind = ComponentKind.CONFIG

    def __init__(self, base_dir: Path, files: Sequence[str], *, name: str = "config") -> None:
        super().__init__(name)
        self.base_dir = Path(base_dir)
        self.files = [str(item) for item in files]

    def describe(self) -> str:
        return f"{self.base_dir} [{', '.join(self.files)}]"

    def extract(self, target_dir: Path) -> None:
        for relative in self.files:
            source = self.base_dir / relative
            if not source.is_file():
                LOGGER.warning("Configuration file %s not found; skipping", source)
                continue
            dest = target_dir / relative
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)

    def inject(self, source_dir: Path) -> None:
        """Copy each snapshot file into place, keeping a dated copy of the old one."""

        stamp = _stamp()
        for item in sorted(source_dir.rglob("*")):
            if not item.is_file():
                continue
            relative = item.relative_to(source_dir)
            target = self.base_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                shutil.copy2(target, target.with_name(f"{target.name}.backup.{stamp}"))
            tmp = target.with_name(f".{target.name}.restore-{os.getpid()}")
            shutil.copy2(item, tmp)
            os.replace(tmp, target)


def database_source_for(
    url: Optional[str],
    working_dir: Path,
    *,
    dump_binary: str = "mongodump",
    restore_binary: str = "mongorestore",
) -> ComponentSource:
    """Pick the database adapter from the connection string scheme."""

    if not url:
        raise ConfigurationError("database_url is not configured (set DATABASE_URL or MONGO_URI)")
    scheme = urlsplit(url).scheme.lower()
    if scheme == "sqlite":
        raw = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url[len("sqlite:"):]
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = working_dir / path
        return SqliteDatabaseSource(path)
    if scheme in {"mongodb", "mongodb+srv"}:
        return MongoDumpSource(url, dump_binary=dump_binary, restore_binary=restore_binary)
    raise ConfigurationError(f"unsupported database_url scheme '{scheme}'")


def default_sources(config) -> List[ComponentSource]:
    """Build the database, uploads and config adapters for ``config``."""

    return [
        database_source_for(
            config.database_url,
            config.working_dir,
            dump_binary=config.mongodump_path,
            restore_binary=config.mongorestore_path,
        ),
        FileTreeSource(config.uploads_dir),
        ConfigSnapshotSource(config.working_dir, config.config_files),
    ]


__all__ = [
    "ComponentSource",
    "ConfigSnapshotSource",
    "FileTreeSource",
    "MongoDumpSource",
    "SqliteDatabaseSource",
    "database_source_for",
    "default_sources",
]
