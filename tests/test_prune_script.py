from datetime import timedelta

from scripts import prune_attempts
from login_guard.services.attempt_ledger import InMemoryAttemptLedger, LoginAttempt
from login_guard.services.brute_force_guard import BruteForceGuard
from tests.fixtures_data import CUSTOMER, START, FakeClock


def _guard_with_old_attempt():
    clock = FakeClock()
    ledger = InMemoryAttemptLedger()
    ledger.record(
        LoginAttempt(
            identifier=CUSTOMER["identifier"],
            ip_address=CUSTOMER["ip_address"],
            user_agent=CUSTOMER["user_agent"],
            success=False,
            timestamp=START - timedelta(days=40),
        )
    )
    return BruteForceGuard(ledger, clock=clock)


def test_prune_script_reports_removed_rows(monkeypatch, capsys):
    guard = _guard_with_old_attempt()
    monkeypatch.setattr(prune_attempts, "ensure_ledger_tables_exist", lambda engine: None)
    monkeypatch.setattr(prune_attempts, "build_guard", lambda session_factory: guard)

    exit_code = prune_attempts.main(["--days", "30"])

    assert exit_code == 0
    assert "Pruned 1 login attempts older than 30 days" in capsys.readouterr().out


def test_prune_script_rejects_retention_inside_failure_window(monkeypatch, capsys):
    monkeypatch.setattr(prune_attempts, "ensure_ledger_tables_exist", lambda engine: None)
    monkeypatch.setattr(prune_attempts, "build_guard", lambda session_factory: _guard_with_old_attempt())

    exit_code = prune_attempts.main(["--days", "0"])

    assert exit_code == 1
    assert "Prune failed" in capsys.readouterr().out


def test_prune_script_stops_when_tables_missing(monkeypatch, capsys):
    def missing(engine):
        raise RuntimeError("tables missing / migrations not applied")

    monkeypatch.setattr(prune_attempts, "ensure_ledger_tables_exist", missing)

    assert prune_attempts.main([]) == 1
    assert "tables missing" in capsys.readouterr().out
