"""Package staging directories into timestamped archives and unpack them."""
from __future__ import annotations

import gzip
import os
import re
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

from core.paths import safe_label

from .envelope import ENVELOPE_SUFFIX
from .errors import PackagingError
from .logs import BackupLogger

ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_ARCHIVE_NAME = re.compile(
    r"^(?P<context>[A-Za-z0-9-]+)_(?P<stamp>\d{8}_\d{6})\.tar\.gz(?P<enc>\.enc)?$"
)


@dataclass(slots=True, frozen=True)
class ArchiveName:
    context: str
    created: datetime
    archive_id: str
    encrypted: bool


def archive_id_for(context: str, when: datetime) -> str:
    return f"{safe_label(context)}_{when.strftime(TIMESTAMP_FORMAT)}"


def parse_archive_name(filename: str) -> Optional[ArchiveName]:
    """Return the parts of ``<context>_<YYYYMMDD_HHMMSS>.tar.gz[.enc]`` or ``None``."""

    match = _ARCHIVE_NAME.match(filename)
    if not match:
        return None
    try:
        created = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    context = match.group("context")
    return ArchiveName(
        context=context,
        created=created,
        archive_id=f"{context}_{match.group('stamp')}",
        encrypted=bool(match.group("enc")),
    )


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.mtime = int(info.mtime)
    return info


def pack_directory(
    staging_dir: Path,
    output_dir: Path,
    *,
    context: str,
    logger: BackupLogger,
    when: Optional[datetime] = None,
) -> Path:
    """Archive ``staging_dir`` into ``output_dir/<context>_<stamp>.tar.gz``.

    Entries are added in sorted order with owner data stripped and a fixed
    gzip header timestamp. The staging directory is only read. The archive is
    written under a ``.partial`` name and renamed once complete, so a failed
    run never leaves a file that looks finished.
    """

    staging_dir = Path(staging_dir)
    entries = sorted(staging_dir.rglob("*")) if staging_dir.is_dir() else []
    if not entries:
        raise PackagingError(f"staging directory {staging_dir} is empty")

    stamp = when or datetime.now(timezone.utc)
    archive_id = archive_id_for(context, stamp)
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / f"{archive_id}{ARCHIVE_SUFFIX}"
    if target.exists() or target.with_name(target.name + ENVELOPE_SUFFIX).exists():
        raise PackagingError(f"archive name {archive_id} is already taken")
    partial = target.with_name(target.name + ".partial")

    logger.info("package_start", id=archive_id, entries=len(entries))
    try:
        with open(partial, "xb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as compressed:
                with tarfile.open(fileobj=compressed, mode="w", format=tarfile.PAX_FORMAT) as archive:
                    for item in entries:
                        arcname = item.relative_to(staging_dir).as_posix()
                        archive.add(item, arcname=arcname, recursive=False, filter=_normalize)
            raw.flush()
            os.fsync(raw.fileno())
    except FileExistsError as exc:
        raise PackagingError(f"another run is packaging {archive_id}") from exc
    except (OSError, tarfile.TarError) as exc:
        partial.unlink(missing_ok=True)
        raise PackagingError(f"archiving {staging_dir} failed: {exc}") from exc
    except BaseException:
        partial.unlink(missing_ok=True)
        raise

    size = partial.stat().st_size
    if size <= 0:
        partial.unlink(missing_ok=True)
        raise PackagingError(f"archive {archive_id} is empty")
    if target.exists():
        partial.unlink(missing_ok=True)
        raise PackagingError(f"archive name {archive_id} is already taken")
    os.replace(partial, target)
    logger.event(event="archive_packaged", phase="package", ok=True, id=archive_id, path=str(target), size=size)
    return target


def _check_member(member: tarfile.TarInfo, dest: Path) -> None:
    name = PurePosixPath(member.name)
    if name.is_absolute() or ".." in name.parts:
        raise PackagingError(f"archive entry {member.name!r} escapes the target directory")
    if member.issym() or member.islnk():
        link = PurePosixPath(member.linkname)
        anchored = os.path.normpath(str(name.parent / link if member.issym() else link))
        if link.is_absolute() or anchored == ".." or anchored.startswith("../"):
            raise PackagingError(f"archive link {member.name!r} points outside the target directory")
    if not (member.isfile() or member.isdir() or member.issym() or member.islnk()):
        raise PackagingError(f"archive entry {member.name!r} has an unsupported type")
    resolved = (dest / member.name).resolve()
    if resolved != dest and dest not in resolved.parents:
        raise PackagingError(f"archive entry {member.name!r} escapes the target directory")


def unpack_archive(archive_path: Path, dest: Path) -> Path:
    """Extract ``archive_path`` into ``dest`` and return ``dest``."""

    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    resolved_dest = dest.resolve()
    try:
        with tarfile.open(archive_path, mode="r:gz") as archive:
            members = archive.getmembers()
            for member in members:
                _check_member(member, resolved_dest)
            if hasattr(tarfile, "data_filter"):
                archive.extractall(resolved_dest, members=members, filter="data")
            else:  # pragma: no cover - interpreters without extraction filters
                archive.extractall(resolved_dest, members=members)
    except (OSError, EOFError, tarfile.TarError) as exc:
        raise PackagingError(f"unpacking {Path(archive_path).name} failed: {exc}") from exc
    return dest


__all__ = [
    "ARCHIVE_SUFFIX",
    "ArchiveName",
    "TIMESTAMP_FORMAT",
    "archive_id_for",
    "pack_directory",
    "parse_archive_name",
    "unpack_archive",
]
