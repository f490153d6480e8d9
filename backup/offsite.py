"""Push recent encrypted archives to a remote host with rsync over ssh."""
from __future__ import annotations

import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .envelope import ENVELOPE_SUFFIX
from .errors import OffsiteError
from .logs import BackupLogger
from .package import parse_archive_name

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess]


def _default_runner(command: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(command),
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=3600,
    )


@dataclass(slots=True)
class OffsiteTarget:
    host: str
    user: str = "root"
    path: str = "/backups/storefront"
    ssh_key: Optional[str] = None
    max_age_hours: float = 24.0
    rsync_path: str = "rsync"
    ssh_path: str = "ssh"

    @classmethod
    def from_settings(cls, offsite: Mapping[str, Any]) -> "OffsiteTarget":
        host = str(offsite.get("host") or "").strip()
        if not host:
            raise OffsiteError("offsite host is not configured (set OFFSITE_HOST)")
        key = offsite.get("ssh_key")
        return cls(
            host=host,
            user=str(offsite.get("user") or "root"),
            path=str(offsite.get("path") or "/backups/storefront"),
            ssh_key=str(Path(str(key)).expanduser()) if key else None,
            max_age_hours=float(offsite.get("max_age_hours") or 24),
            rsync_path=str(offsite.get("rsync_path") or "rsync"),
            ssh_path=str(offsite.get("ssh_path") or "ssh"),
        )

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def ssh_command(self) -> List[str]:
        command = [self.ssh_path]
        if self.ssh_key:
            command += ["-i", self.ssh_key]
        return command + ["-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]


@dataclass(slots=True)
class OffsiteResult:
    pushed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def recent_envelopes(backups_dir: Path, max_age_hours: float, *, now: Optional[float] = None) -> List[Path]:
    """Encrypted archives modified within ``max_age_hours``, oldest first."""

    if not backups_dir.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    found = []
    for child in backups_dir.iterdir():
        if not child.is_file() or not child.name.endswith(ENVELOPE_SUFFIX):
            continue
        if parse_archive_name(child.name) is None:
            continue
        if child.stat().st_mtime >= cutoff:
            found.append(child)
    return sorted(found, key=lambda path: path.name)


def push_offsite(
    backups_dir: Path,
    target: OffsiteTarget,
    *,
    logger: BackupLogger,
    runner: Optional[Runner] = None,
) -> OffsiteResult:
    """Copy recent ``.enc`` archives to ``target``; plaintext archives never leave the host."""

    run = runner or _default_runner
    if runner is None:
        for binary in (target.rsync_path, target.ssh_path):
            if shutil.which(binary) is None:
                raise OffsiteError(f"{binary} not found; install it to push backups offsite")

    candidates = recent_envelopes(backups_dir, target.max_age_hours)
    result = OffsiteResult()
    if not candidates:
        logger.info("offsite_nothing_to_push", dir=str(backups_dir), max_age_hours=target.max_age_hours)
        return result

    ssh = target.ssh_command()
    try:
        probe = run([*ssh, target.destination, f"mkdir -p {shlex.quote(target.path)}"])
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise OffsiteError(f"ssh to {target.destination} failed: {exc}") from exc
    if probe.returncode != 0:
        detail = (probe.stderr or "").strip() or f"exit {probe.returncode}"
        raise OffsiteError(f"cannot prepare {target.path} on {target.destination}: {detail}")

    remote = f"{target.destination}:{target.path.rstrip('/')}/"
    for envelope in candidates:
        command = [target.rsync_path, "-az", "-e", " ".join(ssh), str(envelope), remote]
        try:
            proc = run(command)
        except (OSError, subprocess.TimeoutExpired) as exc:
            proc = None
            detail = str(exc)
        else:
            detail = (proc.stderr or "").strip()
        if proc is not None and proc.returncode == 0:
            result.pushed.append(envelope.name)
            logger.info("offsite_pushed", file=envelope.name, host=target.host)
        else:
            result.failed.append(envelope.name)
            logger.warning("offsite_push_failed", file=envelope.name, host=target.host, error=detail)

    logger.event(
        event="offsite_complete",
        phase="offsite",
        ok=not result.failed,
        host=target.host,
        pushed=len(result.pushed),
        failed=len(result.failed),
    )
    return result


__all__ = ["OffsiteResult", "OffsiteTarget", "push_offsite", "recent_envelopes"]
