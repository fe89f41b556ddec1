from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from login_guard.core import config
from login_guard.core.error_handlers import register_exception_handlers
from login_guard.deps import get_guard
from login_guard.routers.admin_security import router as admin_security_router
from login_guard.routers.brute_force import router as brute_force_router
from login_guard.services.attempt_ledger import InMemoryAttemptLedger
from login_guard.services.brute_force_guard import BruteForceGuard
from login_guard.services.guard_errors import StorageUnavailable
from tests.fixtures_data import ATTACKER_IP, CUSTOMER, FakeClock

ADMIN_TOKEN = "admin-secret"


def _check_body(success: bool = False, **overrides) -> dict:
    body = {
        "action": "check",
        "identifier": CUSTOMER["identifier"],
        "ipAddress": CUSTOMER["ip_address"],
        "userAgent": CUSTOMER["user_agent"],
        "success": success,
    }
    body.update(overrides)
    return body


def _build_client(guard: BruteForceGuard) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(brute_force_router)
    app.include_router(admin_security_router)
    app.dependency_overrides[get_guard] = lambda: guard
    return TestClient(app)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return BruteForceGuard(InMemoryAttemptLedger(), clock=clock, sleep=lambda _: None)


@pytest.fixture
def client(guard):
    return _build_client(guard)


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    return {"X-Admin-Token": ADMIN_TOKEN}


def test_check_returns_verdict_until_lockout(client):
    responses = [client.post("/api/auth/brute-force", json=_check_body()) for _ in range(6)]

    assert all(r.status_code == 200 for r in responses)
    bodies = [r.json() for r in responses]
    assert [b["remainingAttempts"] for b in bodies[:4]] == [4, 3, 2, 1]
    assert bodies[0] == {
        "allowed": True,
        "lockedUntil": None,
        "reason": "NONE",
        "remainingAttempts": 4,
        "requiresCaptcha": False,
        "degraded": False,
        "message": "Invalid credentials. 4 attempts remaining",
    }
    assert bodies[4]["allowed"] is True
    assert bodies[4]["lockedUntil"] == "2026-03-14T09:45:00+00:00"
    assert bodies[2]["message"] == "Invalid credentials. 2 attempts remaining. CAPTCHA required."
    assert bodies[4]["message"] == "Account locked until 2026-03-14T09:45:00+00:00 due to too many failed attempts"
    assert bodies[5]["message"] == "Account locked until 2026-03-14T09:45:00+00:00"
    assert bodies[5]["allowed"] is False
    assert bodies[5]["reason"] == "LOCKED"
    assert bodies[5]["lockedUntil"] == bodies[4]["lockedUntil"]


def test_status_action_reports_account_state(client):
    client.post("/api/auth/brute-force", json=_check_body())

    response = client.post("/api/auth/brute-force", json={"action": "status", "email": CUSTOMER["identifier"]})

    assert response.status_code == 200
    assert response.json() == {
        "identifier": CUSTOMER["identifier"],
        "locked": False,
        "lockedUntil": None,
        "failureCount": 1,
        "remainingAttempts": 4,
        "requiresCaptcha": False,
    }


@pytest.mark.parametrize("action", ["delete", "", None, 7])
def test_unknown_action_is_rejected(client, action):
    response = client.post("/api/auth/brute-force", json={"action": action, "email": "x@y.z"})

    assert response.status_code == 400
    assert response.json() == {"error": "invalid action"}


@pytest.mark.parametrize(
    "body",
    [
        _check_body(success="true"),
        _check_body(identifier=""),
        {"action": "check", "identifier": CUSTOMER["identifier"], "success": False},
        {"action": "status"},
    ],
)
def test_malformed_payload_is_invalid_input(client, guard, body):
    response = client.post("/api/auth/brute-force", json=body)

    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "invalid input"
    assert payload["details"]
    assert guard.get_metrics("1h").total_attempts == 0


def test_non_object_body_is_invalid_input(client):
    response = client.post(
        "/api/auth/brute-force",
        content="not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid input"


def test_storage_outage_on_status_returns_503(clock):
    class OfflineLedger(InMemoryAttemptLedger):
        def get_lockout(self, identifier):
            raise StorageUnavailable("ledger offline")

    client = _build_client(BruteForceGuard(OfflineLedger(), clock=clock, sleep=lambda _: None))

    response = client.post("/api/auth/brute-force", json={"action": "status", "email": CUSTOMER["identifier"]})

    assert response.status_code == 503
    assert response.json() == {"error": "storage unavailable"}


def test_check_during_outage_is_degraded_not_an_error(clock):
    class OfflineLedger(InMemoryAttemptLedger):
        def get_ip_block(self, ip_address):
            raise StorageUnavailable("ledger offline")

    client = _build_client(BruteForceGuard(OfflineLedger(), clock=clock, sleep=lambda _: None))

    response = client.post("/api/auth/brute-force", json=_check_body())

    assert response.status_code == 200
    assert response.json()["allowed"] is True
    assert response.json()["degraded"] is True


def test_admin_endpoints_require_token(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)

    missing = client.get(f"/api/admin/security/accounts/{CUSTOMER['identifier']}")
    wrong = client.get(
        f"/api/admin/security/accounts/{CUSTOMER['identifier']}",
        headers={"X-Admin-Token": "guess"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_admin_endpoints_disabled_without_configured_token(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "")

    response = client.get("/api/admin/security/metrics", headers={"X-Admin-Token": "anything"})

    assert response.status_code == 503


def test_admin_reset_unlocks_account(client, admin_headers):
    for _ in range(5):
        client.post("/api/auth/brute-force", json=_check_body())

    locked = client.get(f"/api/admin/security/accounts/{CUSTOMER['identifier']}", headers=admin_headers)
    reset = client.post(f"/api/admin/security/accounts/{CUSTOMER['identifier']}/reset", headers=admin_headers)
    after = client.post("/api/auth/brute-force", json=_check_body(success=True))

    assert locked.json()["locked"] is True
    assert reset.json() == {"ok": True, "identifier": CUSTOMER["identifier"]}
    assert after.json()["allowed"] is True


def test_admin_ip_block_status_and_unblock(client, admin_headers):
    for index in range(20):
        client.post(
            "/api/auth/brute-force",
            json=_check_body(identifier=f"victim{index}@sofacover.com", ipAddress=ATTACKER_IP),
        )

    status = client.get(f"/api/admin/security/ip-blocks/{ATTACKER_IP}", headers=admin_headers)
    removed = client.delete(f"/api/admin/security/ip-blocks/{ATTACKER_IP}", headers=admin_headers)
    status_after = client.get(f"/api/admin/security/ip-blocks/{ATTACKER_IP}", headers=admin_headers)

    assert status.status_code == 200
    assert status.json()["blocked"] is True
    assert status.json()["failureCount"] == 20
    assert status.json()["blockedUntil"] == "2026-03-14T10:30:00+00:00"
    assert removed.json() == {"ok": True, "removed": True}
    assert status_after.json()["blocked"] is False


def test_admin_metrics(client, admin_headers):
    client.post("/api/auth/brute-force", json=_check_body())

    response = client.get("/api/admin/security/metrics?range=1h", headers=admin_headers)
    invalid = client.get("/api/admin/security/metrics?range=90d", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["timeRange"] == "1h"
    assert body["totalAttempts"] == 1
    assert body["failedAttempts"] == 1
    assert body["topAttackers"] == [{"ip": CUSTOMER["ip_address"], "attempts": 1}]
    assert body["process"]["verdicts"] == {"NONE": 1}
    assert invalid.status_code == 400


def test_admin_prune_uses_retention(client, admin_headers, clock):
    client.post("/api/auth/brute-force", json=_check_body())
    clock.advance(days=45)

    default = client.post("/api/admin/security/prune", headers=admin_headers)
    explicit = client.post("/api/admin/security/prune", headers=admin_headers, json={"olderThanDays": 7})

    assert default.json() == {"ok": True, "removed": 1, "olderThanDays": config.BRUTE_FORCE_RETENTION_DAYS}
    assert explicit.json()["removed"] == 0


def test_check_messages_for_success_and_closed_outage(client, clock):
    ok = client.post("/api/auth/brute-force", json=_check_body(success=True))

    class OfflineLedger(InMemoryAttemptLedger):
        def get_ip_block(self, ip_address):
            raise StorageUnavailable("ledger offline")

    closed = _build_client(
        BruteForceGuard(OfflineLedger(), fail_mode="closed", clock=clock, sleep=lambda _: None)
    ).post("/api/auth/brute-force", json=_check_body(success=True))

    assert ok.json()["message"] == "Login successful"
    assert closed.json()["reason"] == "THROTTLED"
    assert closed.json()["message"] == "Login temporarily unavailable, try again later"
