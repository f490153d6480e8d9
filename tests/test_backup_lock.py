import json
import os
import socket
import time

import pytest

from backup.errors import RunLockHeldError
from backup.lock import RunLock

DEAD_PID = 4194305


def _write_holder(path, **fields):
    path.parent.mkdir(parents=True, exist_ok=True)
    holder = {
        "token": "other",
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "purpose": "backup",
        "started_ts": time.time(),
        "started_utc": "2024-03-05T02:00:00+00:00",
    }
    holder.update(fields)
    path.write_text(json.dumps(holder), encoding="utf-8")


def test_lock_is_exclusive_and_released(tmp_path, stub_logger):
    path = tmp_path / "locks" / "shop.lock"
    first = RunLock(path, purpose="backup", logger=stub_logger)
    second = RunLock(path, purpose="restore", logger=stub_logger)

    with first:
        assert first.held
        assert first.read_holder()["purpose"] == "backup"
        with pytest.raises(RunLockHeldError) as excinfo:
            second.acquire()
        assert excinfo.value.holder["purpose"] == "backup"
        assert not second.held

    assert not path.exists()
    with second:
        assert second.held


def test_lock_released_when_body_raises(tmp_path, stub_logger):
    path = tmp_path / "shop.lock"

    with pytest.raises(RuntimeError):
        with RunLock(path, purpose="backup", logger=stub_logger):
            raise RuntimeError("boom")

    assert not path.exists()


def test_dead_owner_lock_is_broken(tmp_path, stub_logger):
    path = tmp_path / "shop.lock"
    _write_holder(path, pid=DEAD_PID)

    with RunLock(path, purpose="backup", logger=stub_logger) as lock:
        assert lock.held

    assert "lock_stale_broken" in stub_logger.names("warning")


def test_old_lock_from_another_host_is_broken(tmp_path, stub_logger):
    path = tmp_path / "shop.lock"
    _write_holder(path, host="elsewhere.example", started_ts=time.time() - 10_000)

    with RunLock(path, purpose="backup", logger=stub_logger, stale_after_s=3600) as lock:
        assert lock.held


def test_recent_lock_from_another_host_is_respected(tmp_path, stub_logger):
    path = tmp_path / "shop.lock"
    _write_holder(path, host="elsewhere.example", pid=DEAD_PID)

    with pytest.raises(RunLockHeldError):
        RunLock(path, purpose="backup", logger=stub_logger).acquire()

    assert json.loads(path.read_text(encoding="utf-8"))["token"] == "other"


def test_release_does_not_remove_a_lock_it_lost(tmp_path, stub_logger):
    path = tmp_path / "shop.lock"
    lock = RunLock(path, purpose="backup", logger=stub_logger).acquire()
    _write_holder(path, token="someone-else")

    lock.release()

    assert path.exists()
    assert not lock.held
    assert "lock_lost" in stub_logger.names("warning")


def test_active_holder_reports_live_locks_only(tmp_path, stub_logger):
    path = tmp_path / "locks" / "store-abc.lock"
    lock = RunLock(path, purpose="restore", logger=stub_logger, extra={"context": "shop", "store": "abc"})
    observer = RunLock(path, purpose="backup", logger=stub_logger)

    assert observer.active_holder() is None
    with lock:
        holder = observer.active_holder()
        assert holder["purpose"] == "restore"
        assert holder["store"] == "abc"
        assert not observer.held
    assert observer.active_holder() is None

    _write_holder(path, pid=DEAD_PID)
    assert observer.active_holder() is None
    assert path.exists()
