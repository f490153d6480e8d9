import pytest

from maintenance.flag import INACTIVE, MaintenanceState, MaintenanceStore
from maintenance.guard import MaintenanceGuard, check_request

ACTIVE = MaintenanceState(active=True, since="2024-03-05T02:00:00+00:00", reason="Restoring")


def test_inactive_allows_everything():
    decision = check_request(INACTIVE, method="DELETE")

    assert decision.allowed
    assert decision.status == 200


@pytest.mark.parametrize("method", ["GET", "head", "OPTIONS"])
def test_reads_pass_during_maintenance(method):
    decision = check_request(ACTIVE, method=method)

    assert decision.allowed
    assert decision.reason == "read-only"


@pytest.mark.parametrize("role", ["admin", "ROOT"])
def test_admins_pass(role):
    assert check_request(ACTIVE, method="POST", role=role).reason == "admin"


def test_whitelisted_ips_pass():
    decision = check_request(ACTIVE, method="PUT", client_ip="10.0.0.5", whitelist_ips=[" 10.0.0.5 ", ""])

    assert decision.allowed
    assert decision.reason == "whitelisted"


def test_writes_are_refused_with_503():
    decision = check_request(ACTIVE, method="POST", role="customer", client_ip="203.0.113.9", message="Back soon")

    assert not decision.allowed
    assert decision.status == 503
    assert decision.payload == {
        "ok": False,
        "error": "Service temporarily unavailable",
        "message": "Back soon",
        "maintenance": True,
    }


def test_guard_reads_the_store(tmp_path):
    store = MaintenanceStore(tmp_path / "maintenance.json")
    guard = MaintenanceGuard(store, {"whitelist_ips": ["127.0.0.1"], "message": None})

    assert guard("POST").allowed
    store.save(ACTIVE)
    refused = guard("POST", client_ip="192.0.2.1")
    assert refused.status == 503
    assert refused.payload["message"].startswith("We are currently performing maintenance")
    assert guard("POST", client_ip="127.0.0.1").allowed

    store.path.write_text("garbage", encoding="utf-8")
    assert guard("POST").allowed
