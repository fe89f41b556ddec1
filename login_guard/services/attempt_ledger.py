from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Iterator, Optional

from login_guard.services.guard_errors import StorageUnavailable

DEFAULT_TIMEOUT_SECONDS = 2.0


@dataclass(frozen=True)
class LoginAttempt:
    identifier: str
    ip_address: str
    user_agent: str
    success: bool
    timestamp: datetime
    blocked: bool = False


@dataclass(frozen=True)
class LockoutRecord:
    identifier: str
    locked_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    reset_at: Optional[datetime] = None
    lockout_level: int = 0
    last_lockout_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class IpBlockRecord:
    ip_address: str
    blocked_at: Optional[datetime]
    blocked_until: Optional[datetime]
    reason: str = ""

    def is_active(self, now: datetime) -> bool:
        return self.blocked_until is not None and self.blocked_until > now


@dataclass
class LedgerSummary:
    total_attempts: int
    failed_attempts: int
    locked_accounts: int
    blocked_ips: int
    top_attackers: list[tuple[str, int]]


class AttemptLedger(ABC):
    """Append-only history of login attempts plus the lockout rows derived from it."""

    @abstractmethod
    def record(self, attempt: LoginAttempt) -> None:
        """Appends an attempt. Entries are never modified afterwards."""

    @abstractmethod
    def recent_attempts(self, identifier: str, window: timedelta, *, now: datetime) -> list[LoginAttempt]:
        """Attempts for the identifier inside the lookback window, newest first."""

    @abstractmethod
    def count_ip_failures_since(self, ip_address: str, since: datetime) -> int:
        """Failed attempts from one IP at or after `since`, across every identifier, excluding ones rejected by a block."""

    @abstractmethod
    def get_lockout(self, identifier: str) -> Optional[LockoutRecord]:
        ...

    @abstractmethod
    def open_lockout(
        self, identifier: str, *, locked_at: datetime, locked_until: datetime, level: int
    ) -> bool:
        """Compare-and-set: opens a lockout only if none is active at `locked_at`."""

    @abstractmethod
    def note_failure(self, identifier: str, *, at: datetime, forget_escalation: bool = False) -> None:
        """Remembers the newest counted failure, optionally dropping the escalation level."""

    @abstractmethod
    def clear_lockout(self, identifier: str, *, reset_at: datetime, forget_escalation: bool = False) -> None:
        """Ends any lockout and stops counting failures older than `reset_at`."""

    @abstractmethod
    def get_ip_block(self, ip_address: str) -> Optional[IpBlockRecord]:
        ...

    @abstractmethod
    def open_ip_block(
        self, ip_address: str, *, blocked_at: datetime, blocked_until: datetime, reason: str
    ) -> bool:
        """Compare-and-set: blocks the IP only if no block is active at `blocked_at`."""

    @abstractmethod
    def clear_ip_block(self, ip_address: str) -> bool:
        ...

    @abstractmethod
    def prune(self, before: datetime) -> int:
        """Deletes attempts older than `before`, returns how many were removed."""

    @abstractmethod
    def summarize(self, since: datetime, *, now: datetime, top_n: int = 10) -> LedgerSummary:
        ...


class InMemoryAttemptLedger(AttemptLedger):
    """Ledger kept in process memory, for tests and single-process deployments."""

    def __init__(self, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._attempts: dict[str, list[LoginAttempt]] = {}
        self._attempts_by_ip: dict[str, list[LoginAttempt]] = {}
        self._lockouts: dict[str, LockoutRecord] = {}
        self._ip_blocks: dict[str, IpBlockRecord] = {}
        self._lock = Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout_seconds):
            raise StorageUnavailable("in-memory ledger lock timed out")
        try:
            yield
        finally:
            self._lock.release()

    def record(self, attempt: LoginAttempt) -> None:
        with self._locked():
            self._attempts.setdefault(attempt.identifier, []).append(attempt)
            self._attempts_by_ip.setdefault(attempt.ip_address, []).append(attempt)

    def recent_attempts(self, identifier: str, window: timedelta, *, now: datetime) -> list[LoginAttempt]:
        cutoff = now - window
        with self._locked():
            history = self._attempts.get(identifier, [])
            recent = [attempt for attempt in reversed(history) if attempt.timestamp >= cutoff]
        # Stable sort keeps insertion order newest first among equal timestamps
        recent.sort(key=lambda attempt: attempt.timestamp, reverse=True)
        return recent

    def count_ip_failures_since(self, ip_address: str, since: datetime) -> int:
        with self._locked():
            return _count_failures(self._attempts_by_ip.get(ip_address, []), since)

    def get_lockout(self, identifier: str) -> Optional[LockoutRecord]:
        with self._locked():
            return self._lockouts.get(identifier)

    def open_lockout(
        self, identifier: str, *, locked_at: datetime, locked_until: datetime, level: int
    ) -> bool:
        with self._locked():
            current = self._lockouts.get(identifier) or LockoutRecord(identifier=identifier)
            if current.is_active(locked_at):
                return False
            self._lockouts[identifier] = replace(
                current,
                locked_at=locked_at,
                locked_until=locked_until,
                lockout_level=level,
                last_lockout_at=locked_at,
            )
            return True

    def note_failure(self, identifier: str, *, at: datetime, forget_escalation: bool = False) -> None:
        with self._locked():
            current = self._lockouts.get(identifier) or LockoutRecord(identifier=identifier)
            updated = replace(current, last_failure_at=at)
            if forget_escalation:
                updated = replace(updated, lockout_level=0, last_lockout_at=None)
            self._lockouts[identifier] = updated

    def clear_lockout(self, identifier: str, *, reset_at: datetime, forget_escalation: bool = False) -> None:
        with self._locked():
            current = self._lockouts.get(identifier) or LockoutRecord(identifier=identifier)
            cleared = replace(current, locked_at=None, locked_until=None, reset_at=reset_at)
            if forget_escalation:
                cleared = replace(cleared, lockout_level=0, last_lockout_at=None)
            self._lockouts[identifier] = cleared

    def get_ip_block(self, ip_address: str) -> Optional[IpBlockRecord]:
        with self._locked():
            return self._ip_blocks.get(ip_address)

    def open_ip_block(
        self, ip_address: str, *, blocked_at: datetime, blocked_until: datetime, reason: str
    ) -> bool:
        with self._locked():
            current = self._ip_blocks.get(ip_address)
            if current is not None and current.is_active(blocked_at):
                return False
            self._ip_blocks[ip_address] = IpBlockRecord(
                ip_address=ip_address,
                blocked_at=blocked_at,
                blocked_until=blocked_until,
                reason=reason,
            )
            return True

    def clear_ip_block(self, ip_address: str) -> bool:
        with self._locked():
            return self._ip_blocks.pop(ip_address, None) is not None

    def prune(self, before: datetime) -> int:
        removed = 0
        with self._locked():
            for index in (self._attempts, self._attempts_by_ip):
                for key in list(index):
                    kept = [attempt for attempt in index[key] if attempt.timestamp >= before]
                    if index is self._attempts:
                        removed += len(index[key]) - len(kept)
                    if kept:
                        index[key] = kept
                    else:
                        del index[key]
        return removed

    def summarize(self, since: datetime, *, now: datetime, top_n: int = 10) -> LedgerSummary:
        with self._locked():
            attempts = [
                attempt
                for history in self._attempts.values()
                for attempt in history
                if attempt.timestamp > since
            ]
            locked_accounts = sum(1 for record in self._lockouts.values() if record.is_active(now))
            blocked_ips = sum(1 for record in self._ip_blocks.values() if record.is_active(now))

        failed = [attempt for attempt in attempts if not attempt.success]
        attackers = Counter(attempt.ip_address for attempt in failed)
        return LedgerSummary(
            total_attempts=len(attempts),
            failed_attempts=len(failed),
            locked_accounts=locked_accounts,
            blocked_ips=blocked_ips,
            top_attackers=attackers.most_common(top_n),
        )


def _count_failures(attempts: list[LoginAttempt], since: datetime) -> int:
    return sum(
        1
        for attempt in attempts
        if not attempt.success and not attempt.blocked and attempt.timestamp >= since
    )
