import json
import sqlite3

import requests

from health.checks import HealthSeverity, HealthTargets, run_checks
from health.run import cli, format_report, report_to_dict, run_health_checks


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


def _fake_get(statuses):
    calls = []

    def fake(url, **kwargs):
        calls.append(url)
        outcome = statuses.get(url, 200)
        if isinstance(outcome, Exception):
            raise outcome
        return _Response(outcome)

    return fake, calls


def _sqlite(tmp_path):
    path = tmp_path / "data" / "app.sqlite"
    path.parent.mkdir(parents=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE products(id INTEGER PRIMARY KEY)")
        conn.commit()
    finally:
        conn.close()
    return path


def test_all_targets_healthy(tmp_path, monkeypatch):
    _sqlite(tmp_path)
    fake, calls = _fake_get({})
    monkeypatch.setattr("health.checks.requests.get", fake)
    targets = HealthTargets(
        working_dir=tmp_path,
        api_url="http://api.test/",
        frontend_url="http://shop.test",
        database_url="sqlite:///data/app.sqlite",
    )

    report = run_checks(targets)

    assert report.healthy
    assert report.passed == ["backend", "frontend", "database"]
    assert calls == ["http://api.test/api/health", "http://shop.test/health"]


def test_backend_down_and_frontend_root_fallback(tmp_path, monkeypatch):
    fake, _ = _fake_get(
        {
            "http://api.test/api/health": requests.ConnectionError("refused"),
            "http://shop.test/health": 404,
        }
    )
    monkeypatch.setattr("health.checks.requests.get", fake)

    report = run_checks(HealthTargets(working_dir=tmp_path, api_url="http://api.test", frontend_url="http://shop.test"))

    assert not report.healthy
    assert [item.code for item in report.items] == ["BACKEND_UNHEALTHY"]
    assert "ConnectionError" in report.items[0].details
    assert "frontend" in report.passed


def test_missing_sqlite_database_is_major(tmp_path):
    report = run_checks(HealthTargets(working_dir=tmp_path, database_url="sqlite:///data/absent.sqlite"))

    assert [item.code for item in report.items] == ["DB_MISSING"]
    assert report.summary.major == 1


def test_mongo_without_shell_is_skipped(tmp_path, monkeypatch):
    monkeypatch.setattr("health.checks.shutil.which", lambda name: None)

    report = run_checks(HealthTargets(working_dir=tmp_path, database_url="mongodb://user:secret@db:27017/shop"))

    assert report.healthy
    assert report.items[0].code == "DB_CHECK_SKIPPED"
    assert report.items[0].severity is HealthSeverity.MINOR


def test_unknown_scheme_is_minor(tmp_path):
    report = run_checks(HealthTargets(working_dir=tmp_path, database_url="postgres://db/shop"))

    assert report.healthy
    assert report.items[0].code == "DB_SCHEME_UNKNOWN"


def test_run_health_checks_logs_to_ops_journal(tmp_path, monkeypatch):
    fake, _ = _fake_get({"http://api.test/api/health": 500})
    monkeypatch.setattr("health.checks.requests.get", fake)

    report = run_health_checks(tmp_path, targets=HealthTargets(working_dir=tmp_path, api_url="http://api.test"))

    entry = json.loads((tmp_path / "storage" / "logs" / "ops.jsonl").read_text(encoding="utf-8").splitlines()[-1])
    assert entry["event"] == "health_check"
    assert entry["ok"] is False
    assert entry["findings"] == ["BACKEND_UNHEALTHY"]
    assert "HTTP 500" in format_report(report)
    assert report_to_dict(report)["summary"] == {"major": 1, "minor": 0}


def test_cli_exit_code_follows_health(tmp_path, monkeypatch, capsys):
    fake, _ = _fake_get({})
    monkeypatch.setattr("health.checks.requests.get", fake)
    for key in ("API_URL", "FRONTEND_URL", "DATABASE_URL", "MONGO_URI"):
        monkeypatch.delenv(key, raising=False)

    assert cli(["--working-dir", str(tmp_path), "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["healthy"] is True

    monkeypatch.setenv("DATABASE_URL", "sqlite:///missing.sqlite")
    assert cli(["--working-dir", str(tmp_path)]) == 1
    assert "DB_MISSING" in capsys.readouterr().out
