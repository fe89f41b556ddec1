from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from login_guard import deps
from login_guard.core import config, startup_checks
from login_guard.core.logging_setup import JsonFormatter
from login_guard.core.request_context import clear_request_context, set_request_context
from login_guard.services.brute_force_guard import FailMode
from login_guard.services.guard_errors import PolicyMisconfiguration
from tests.fixtures_data import build_session_factory

ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def test_request_id_is_returned_in_response_header(monkeypatch):
    from login_guard import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)

    with TestClient(main.app) as client:
        response = client.get("/health")
        echoed = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    UUID(response.headers.get("X-Request-ID"))
    assert echoed.headers.get("X-Request-ID") == "req-123"


def test_production_environment_rejects_sqlite(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setattr(startup_checks, "DATABASE_URL", "sqlite:///./forbidden.db")

    with pytest.raises(RuntimeError, match="SQLite is forbidden"):
        startup_checks.validate_database_environment()


@pytest.mark.parametrize(
    "environment, env, expected",
    [
        (None, "production", "production"),
        ("staging", "production", "staging"),
        (None, None, "dev"),
        (" Prod ", None, "prod"),
    ],
)
def test_environment_variable_takes_precedence_over_env(monkeypatch, environment, env, expected):
    for name, value in (("ENVIRONMENT", environment), ("ENV", env)):
        if value is None:
            monkeypatch.delenv(name, raising=False)
        else:
            monkeypatch.setenv(name, value)

    assert config.current_env() == expected


def test_legacy_env_variable_also_rejects_sqlite_in_production(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setattr(startup_checks, "DATABASE_URL", "sqlite:///./forbidden.db")

    with pytest.raises(RuntimeError, match="SQLite is forbidden"):
        startup_checks.validate_database_environment()


def test_migration_check_fails_when_pending_migration(tmp_path: Path, monkeypatch):
    db_path = tmp_path / "pending.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)")
    conn.execute("INSERT INTO alembic_version (version_num) VALUES ('000000000000')")
    conn.commit()
    conn.close()

    monkeypatch.setenv("ENVIRONMENT", "development")
    engine = create_engine(f"sqlite:///{db_path}")

    with pytest.raises(RuntimeError, match="Pending migrations"):
        startup_checks.ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_INI)


def test_migration_check_passes_at_head(tmp_path: Path, monkeypatch):
    db_path = tmp_path / "head.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)")
    conn.execute("INSERT INTO alembic_version (version_num) VALUES ('0002_lockout_last_failure')")
    conn.commit()
    conn.close()

    monkeypatch.setenv("ENVIRONMENT", "development")

    startup_checks.ensure_migrations_applied(
        engine=create_engine(f"sqlite:///{db_path}"),
        alembic_config_path=ALEMBIC_INI,
    )


def test_missing_ledger_tables_are_reported(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")

    with pytest.raises(RuntimeError, match="tables missing"):
        startup_checks.ensure_ledger_tables_exist(engine)


def test_guard_is_built_from_settings(monkeypatch):
    monkeypatch.setattr(config, "BRUTE_FORCE_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(config, "BRUTE_FORCE_FAIL_MODE", "closed")

    guard = deps.build_guard(build_session_factory())

    assert guard.policy.config.failure_threshold == 3
    assert guard.fail_mode is FailMode.CLOSED


@pytest.mark.parametrize(
    ("setting", "value"),
    [
        ("BRUTE_FORCE_MAX_ATTEMPTS", 0),
        ("BRUTE_FORCE_LOCKOUT_MINUTES", -5),
        ("BRUTE_FORCE_WINDOW_MINUTES", 0),
        ("BRUTE_FORCE_FAIL_MODE", "sometimes"),
        ("BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS", 0),
    ],
)
def test_misconfiguration_is_rejected_at_startup(monkeypatch, setting, value):
    monkeypatch.setattr(config, setting, value)

    with pytest.raises(PolicyMisconfiguration):
        deps.build_guard(build_session_factory())


def test_json_logs_carry_request_context_and_mask_secrets():
    set_request_context(request_id="req-1", identifier="customer@sofacover.com", ip_address="203.0.113.10")
    try:
        record = logging.LogRecord(
            "login_guard.test", logging.INFO, __file__, 1, "token=abc123 rejected", None, None
        )
        payload = json.loads(JsonFormatter().format(record))
    finally:
        clear_request_context()

    assert payload["request_id"] == "req-1"
    assert payload["identifier"] == "customer@sofacover.com"
    assert payload["ip_address"] == "203.0.113.10"
    assert "abc123" not in payload["message"]
