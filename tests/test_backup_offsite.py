import os
import subprocess
import time

import pytest

from backup.errors import OffsiteError
from backup.offsite import OffsiteTarget, push_offsite, recent_envelopes


class FakeRunner:
    def __init__(self, fail_on=()):
        self.commands = []
        self.fail_on = set(fail_on)

    def __call__(self, command):
        self.commands.append(list(command))
        failing = any(name in part for part in command for name in self.fail_on)
        return subprocess.CompletedProcess(command, 1 if failing else 0, stdout="", stderr="denied" if failing else "")


def _archives(base):
    base.mkdir(parents=True)
    now = time.time()
    for name, age_hours in (
        ("shop_20240305_020000.tar.gz.enc", 1),
        ("shop_20240304_020000.tar.gz.enc", 2),
        ("shop_20240201_020000.tar.gz.enc", 24 * 30),
        ("shop_20240305_020000.tar.gz", 1),
        ("notes.enc", 1),
    ):
        path = base / name
        path.write_bytes(b"\x00" * 8)
        stamp = now - age_hours * 3600
        os.utime(path, (stamp, stamp))


def test_recent_envelopes_only_returns_fresh_encrypted_archives(tmp_path):
    _archives(tmp_path / "shop")

    found = recent_envelopes(tmp_path / "shop", 24)

    assert [path.name for path in found] == [
        "shop_20240304_020000.tar.gz.enc",
        "shop_20240305_020000.tar.gz.enc",
    ]
    assert recent_envelopes(tmp_path / "absent", 24) == []


def test_target_requires_a_host():
    with pytest.raises(OffsiteError):
        OffsiteTarget.from_settings({"host": None})

    target = OffsiteTarget.from_settings({"host": "vault.example", "user": "backup", "ssh_key": "/keys/id"})
    assert target.destination == "backup@vault.example"
    assert target.ssh_command()[:3] == ["ssh", "-i", "/keys/id"]


def test_push_copies_each_envelope(tmp_path, stub_logger):
    _archives(tmp_path / "shop")
    runner = FakeRunner()
    target = OffsiteTarget(host="vault.example", path="/srv/backups")

    result = push_offsite(tmp_path / "shop", target, logger=stub_logger, runner=runner)

    assert result.pushed == ["shop_20240304_020000.tar.gz.enc", "shop_20240305_020000.tar.gz.enc"]
    assert result.failed == []
    assert runner.commands[0][-1] == "mkdir -p /srv/backups"
    assert all(command[-1] == "root@vault.example:/srv/backups/" for command in runner.commands[1:])
    assert not any(command[-2].endswith(".tar.gz") for command in runner.commands[1:])


def test_one_failed_copy_does_not_stop_the_rest(tmp_path, stub_logger):
    _archives(tmp_path / "shop")
    runner = FakeRunner(fail_on=["shop_20240304_020000"])

    result = push_offsite(tmp_path / "shop", OffsiteTarget(host="vault.example"), logger=stub_logger, runner=runner)

    assert result.pushed == ["shop_20240305_020000.tar.gz.enc"]
    assert result.failed == ["shop_20240304_020000.tar.gz.enc"]
    assert "offsite_push_failed" in stub_logger.names("warning")


def test_unreachable_host_is_an_error(tmp_path, stub_logger):
    _archives(tmp_path / "shop")
    runner = FakeRunner(fail_on=["mkdir"])

    with pytest.raises(OffsiteError):
        push_offsite(tmp_path / "shop", OffsiteTarget(host="vault.example"), logger=stub_logger, runner=runner)

    assert len(runner.commands) == 1


def test_nothing_recent_means_no_connection(tmp_path, stub_logger):
    (tmp_path / "shop").mkdir()
    runner = FakeRunner()

    result = push_offsite(tmp_path / "shop", OffsiteTarget(host="vault.example"), logger=stub_logger, runner=runner)

    assert result.pushed == []
    assert runner.commands == []


def test_remote_path_is_shell_quoted(tmp_path, stub_logger):
    _archives(tmp_path / "shop")
    runner = FakeRunner()
    target = OffsiteTarget(host="vault.example", path="/srv/it's; rm -rf ~")

    push_offsite(tmp_path / "shop", target, logger=stub_logger, runner=runner)

    assert runner.commands[0][-1] == "mkdir -p '/srv/it'\"'\"'s; rm -rf ~'"
