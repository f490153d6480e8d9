"""Lock files guarding backup, restore and rotation runs."""
from __future__ import annotations

import json
import os
import socket
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import RunLockHeldError
from .logs import BackupLogger

DEFAULT_STALE_AFTER_S = 6 * 3600


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class RunLock:
    """Exclusive lock file holding a JSON record of its owner.

    A lock is considered stale when it is older than ``stale_after_s`` or
    when its owner ran on this host and that pid no longer exists; stale
    locks are broken with a warning so a crashed run cannot wedge the system.
    """

    def __init__(
        self,
        path: Path,
        *,
        purpose: str,
        logger: BackupLogger,
        stale_after_s: float = DEFAULT_STALE_AFTER_S,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.path = Path(path)
        self.purpose = purpose
        self.extra = dict(extra or {})
        self._logger = logger
        self._stale_after_s = float(stale_after_s)
        self._token: Optional[str] = None

    # ------------------------------------------------------------------
    @property
    def held(self) -> bool:
        return self._token is not None

    def read_holder(self) -> Optional[dict]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, holder: Optional[dict]) -> bool:
        try:
            started = float((holder or {}).get("started_ts") or self.path.stat().st_mtime)
        except OSError:
            return False
        if time.time() - started > self._stale_after_s:
            return True
        if holder and holder.get("host") == socket.gethostname():
            try:
                return not _pid_alive(int(holder.get("pid", 0)))
            except (TypeError, ValueError):
                return False
        return False

    def active_holder(self) -> Optional[dict]:
        """Return the record of a live holder without taking the lock."""

        holder = self.read_holder()
        if holder is None or self._is_stale(holder):
            return None
        return holder

    # ------------------------------------------------------------------
    def acquire(self) -> "RunLock":
        if self.held:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        token = f"{socket.gethostname()}:{os.getpid()}:{time.time_ns()}"
        payload = {
            "token": token,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "purpose": self.purpose,
            "started_ts": time.time(),
            "started_utc": datetime.now(timezone.utc).isoformat(),
            **self.extra,
        }
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.read_holder()
                if holder is None:
                    continue
                if self._is_stale(holder):
                    self._logger.warning("lock_stale_broken", path=str(self.path), holder=holder)
                    self.path.unlink(missing_ok=True)
                    continue
                raise RunLockHeldError(
                    f"another {holder.get('purpose', 'run')} holds {self.path.name} "
                    f"(pid {holder.get('pid', '?')} on {holder.get('host', '?')} since {holder.get('started_utc', '?')})",
                    holder=holder,
                )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            self._token = token
            self._logger.info("lock_acquired", path=str(self.path), purpose=self.purpose)
            return self
        raise RunLockHeldError(f"could not acquire {self.path.name}")

    def release(self) -> None:
        if not self.held:
            return
        holder = self.read_holder()
        if holder and holder.get("token") == self._token:
            self.path.unlink(missing_ok=True)
            self._logger.info("lock_released", path=str(self.path), purpose=self.purpose)
        else:
            self._logger.warning("lock_lost", path=str(self.path), purpose=self.purpose)
        self._token = None

    def __enter__(self) -> "RunLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


__all__ = ["DEFAULT_STALE_AFTER_S", "RunLock"]
