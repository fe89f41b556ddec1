from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Iterator, Optional, TypeVar

from login_guard.core.metrics import InMemoryGuardMetrics
from login_guard.services.attempt_ledger import AttemptLedger, IpBlockRecord, LoginAttempt
from login_guard.services.guard_errors import InvalidInput, StorageUnavailable
from login_guard.services.lockout_policy import (
    AccountLockoutState,
    LockoutPolicy,
    PolicyDecision,
    derive_state,
)

logger = logging.getLogger(__name__)
BRUTE_FORCE_PREFIX = "[BRUTE_FORCE]"
IP_BLOCK_REASON = "Excessive failed login attempts"

MAX_IDENTIFIER_LENGTH = 255
MAX_IP_LENGTH = 64
MAX_USER_AGENT_LENGTH = 512

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

T = TypeVar("T")


class Reason(str, Enum):
    NONE = "NONE"
    LOCKED = "LOCKED"
    THROTTLED = "THROTTLED"


class FailMode(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class LoginVerdict:
    allowed: bool
    locked_until: Optional[datetime]
    reason: Reason
    remaining_attempts: int
    requires_captcha: bool = False
    # Decided by the fail-open/fail-closed fallback, or the attempt was not recorded
    degraded: bool = False


@dataclass
class AccountStatus:
    identifier: str
    locked: bool
    locked_until: Optional[datetime]
    failure_count: int
    remaining_attempts: int
    requires_captcha: bool


@dataclass
class IpStatus:
    ip_address: str
    failure_count: int
    blocked: bool
    blocked_until: Optional[datetime]
    reason: str = ""


@dataclass
class GuardMetrics:
    time_range: str
    total_attempts: int
    failed_attempts: int
    locked_accounts: int
    blocked_ips: int
    top_attackers: list[dict[str, object]] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyedLocks:
    """One mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str, *, timeout: float) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [Lock(), 0])
            entry[1] += 1
        acquired = entry[0].acquire(timeout=timeout)
        try:
            if not acquired:
                raise StorageUnavailable(f"timed out waiting for concurrent attempts on {key!r}")
            yield
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class BruteForceGuard:
    """Records login attempts and turns the lockout policy into verdicts.

    Attempts for one identifier are serialized across record and evaluate, and
    the ledger opens lockouts with a compare-and-set, so a burst of parallel
    failures opens exactly one lockout window.
    """

    def __init__(
        self,
        ledger: AttemptLedger,
        policy: Optional[LockoutPolicy] = None,
        *,
        fail_mode: FailMode = FailMode.OPEN,
        retry_backoff_seconds: float = 0.05,
        lock_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[InMemoryGuardMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.policy = policy or LockoutPolicy()
        self.fail_mode = FailMode(fail_mode)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.metrics = metrics or InMemoryGuardMetrics()
        self._clock = clock
        self._sleep = sleep
        self._locks = KeyedLocks()

    def check_login_attempt(
        self,
        identifier: str,
        ip_address: str,
        user_agent: str,
        success: bool,
    ) -> LoginVerdict:
        identifier, ip_address, user_agent = _validate_attempt(identifier, ip_address, user_agent, success)

        try:
            with self._locks.hold(identifier, timeout=self.lock_timeout_seconds):
                verdict = self._check(identifier, ip_address, user_agent, success, self._clock())
        except StorageUnavailable:
            verdict = self._degraded_verdict(identifier)

        self.metrics.observe_verdict(verdict.reason.value, degraded=verdict.degraded)
        return verdict

    def evaluate(self, identifier: str) -> PolicyDecision:
        identifier = _validate_identifier(identifier)
        now = self._clock()
        return self.policy.evaluate(self._account_state(identifier, now), now)

    def get_account_status(self, identifier: str) -> AccountStatus:
        identifier = _validate_identifier(identifier)
        now = self._clock()
        decision = self.policy.evaluate(self._account_state(identifier, now), now)
        # A lockout that is due but not persisted yet has no window to report
        pending = decision.new_lockout
        return AccountStatus(
            identifier=identifier,
            locked=decision.locked and not pending,
            locked_until=None if pending else decision.locked_until,
            failure_count=decision.failure_count,
            remaining_attempts=decision.remaining_attempts,
            requires_captcha=decision.requires_captcha,
        )

    def reset_account_attempts(self, identifier: str) -> None:
        identifier = _validate_identifier(identifier)
        with self._locks.hold(identifier, timeout=self.lock_timeout_seconds):
            self._storage(self.ledger.clear_lockout, identifier, reset_at=self._clock(), forget_escalation=True)
        logger.info("%s account attempts reset", BRUTE_FORCE_PREFIX, extra={"identifier": identifier})

    def get_ip_status(self, ip_address: str) -> IpStatus:
        ip_address = _validate_ip(ip_address)
        now = self._clock()
        block = self._storage(self.ledger.get_ip_block, ip_address)
        failures = self._storage(
            self.ledger.count_ip_failures_since, ip_address, self._ip_anchor(block, now)
        )
        active = block is not None and block.is_active(now)
        return IpStatus(
            ip_address=ip_address,
            failure_count=failures,
            blocked=active,
            blocked_until=block.blocked_until if active else None,
            reason=block.reason if active else "",
        )

    def unblock_ip(self, ip_address: str) -> bool:
        ip_address = _validate_ip(ip_address)
        removed = self._storage(self.ledger.clear_ip_block, ip_address)
        if removed:
            logger.info("%s ip unblocked", BRUTE_FORCE_PREFIX, extra={"ip_address": ip_address})
        return removed

    def get_metrics(self, time_range: str = "24h") -> GuardMetrics:
        if time_range not in TIME_RANGES:
            raise InvalidInput([f"time_range must be one of {', '.join(TIME_RANGES)}"])
        now = self._clock()
        summary = self._storage(self.ledger.summarize, now - TIME_RANGES[time_range], now=now)
        return GuardMetrics(
            time_range=time_range,
            total_attempts=summary.total_attempts,
            failed_attempts=summary.failed_attempts,
            locked_accounts=summary.locked_accounts,
            blocked_ips=summary.blocked_ips,
            top_attackers=[{"ip": ip, "attempts": count} for ip, count in summary.top_attackers],
        )

    def prune_attempts(self, older_than: timedelta) -> int:
        if older_than <= self.policy.config.failure_window:
            raise InvalidInput(["retention must be longer than the failure window"])
        removed = self._storage(self.ledger.prune, self._clock() - older_than)
        logger.info("%s pruned attempts removed=%s", BRUTE_FORCE_PREFIX, removed)
        return removed

    def _check(
        self,
        identifier: str,
        ip_address: str,
        user_agent: str,
        success: bool,
        now: datetime,
    ) -> LoginVerdict:
        def attempt(blocked: bool) -> LoginAttempt:
            return LoginAttempt(
                identifier=identifier,
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                timestamp=now,
                blocked=blocked,
            )

        block = self._storage(self.ledger.get_ip_block, ip_address)
        if block is not None and block.is_active(now):
            self._record(attempt(blocked=True))
            logger.warning(
                "%s attempt from blocked ip rejected",
                BRUTE_FORCE_PREFIX,
                extra={"identifier": identifier, "ip_address": ip_address, "reason": Reason.THROTTLED.value},
            )
            return LoginVerdict(
                allowed=False,
                locked_until=block.blocked_until,
                reason=Reason.THROTTLED,
                remaining_attempts=0,
            )

        # Whether this attempt is permitted depends only on the state before it
        before = self.policy.evaluate(self._account_state(identifier, now), now)
        if before.locked:
            locked_until = before.locked_until
            if before.new_lockout:
                locked_until = self._open_lockout(identifier, before, now)
            self._record(attempt(blocked=True))
            logger.warning(
                "%s attempt on locked account rejected",
                BRUTE_FORCE_PREFIX,
                extra={"identifier": identifier, "ip_address": ip_address, "reason": Reason.LOCKED.value},
            )
            return LoginVerdict(
                allowed=False,
                locked_until=locked_until,
                reason=Reason.LOCKED,
                remaining_attempts=0,
                requires_captcha=before.requires_captcha,
            )

        recorded = self._record(attempt(blocked=False))

        if success:
            self._storage(self.ledger.clear_lockout, identifier, reset_at=now)
            return LoginVerdict(
                allowed=True,
                locked_until=None,
                reason=Reason.NONE,
                remaining_attempts=self.policy.config.failure_threshold,
                degraded=not recorded,
            )

        if recorded:
            self._note_failure(identifier, now)
        after = self.policy.evaluate(self._account_state(identifier, now), now)
        locked_until = self._open_lockout(identifier, after, now) if after.new_lockout else None
        self._check_ip_threshold(ip_address, block, now)
        return LoginVerdict(
            allowed=True,
            locked_until=locked_until,
            reason=Reason.NONE,
            remaining_attempts=after.remaining_attempts,
            requires_captcha=after.requires_captcha,
            degraded=not recorded,
        )

    def _note_failure(self, identifier: str, now: datetime) -> None:
        lockout = self._storage(self.ledger.get_lockout, identifier)
        lapsed = lockout is not None and self.policy.escalation_lapsed(
            lockout.last_lockout_at, lockout.last_failure_at, now
        )
        self._storage(self.ledger.note_failure, identifier, at=now, forget_escalation=lapsed)
        if lapsed:
            logger.info(
                "%s escalation level reset after clean period",
                BRUTE_FORCE_PREFIX,
                extra={"identifier": identifier},
            )

    def _account_state(self, identifier: str, now: datetime) -> AccountLockoutState:
        lockout = self._storage(self.ledger.get_lockout, identifier)
        attempts = self._storage(
            self.ledger.recent_attempts, identifier, self.policy.config.failure_window, now=now
        )
        return derive_state(
            identifier,
            attempts,
            now=now,
            config=self.policy.config,
            locked_until=lockout.locked_until if lockout else None,
            reset_at=lockout.reset_at if lockout else None,
            lockout_level=lockout.lockout_level if lockout else 0,
            last_lockout_at=lockout.last_lockout_at if lockout else None,
            last_failure_at=lockout.last_failure_at if lockout else None,
        )

    def _open_lockout(self, identifier: str, decision: PolicyDecision, now: datetime) -> Optional[datetime]:
        opened = self._storage(
            self.ledger.open_lockout,
            identifier,
            locked_at=now,
            locked_until=decision.locked_until,
            level=decision.lockout_level,
        )
        if not opened:
            # Another worker won the compare-and-set; report its window
            current = self._storage(self.ledger.get_lockout, identifier)
            return current.locked_until if current else decision.locked_until

        self.metrics.observe_lockout()
        logger.warning(
            "%s account locked failures=%s level=%s until=%s",
            BRUTE_FORCE_PREFIX,
            decision.failure_count,
            decision.lockout_level,
            decision.locked_until.isoformat(),
            extra={"identifier": identifier},
        )
        return decision.locked_until

    def _check_ip_threshold(self, ip_address: str, block: Optional[IpBlockRecord], now: datetime) -> None:
        failures = self._storage(self.ledger.count_ip_failures_since, ip_address, self._ip_anchor(block, now))
        blocked_until = self.policy.ip_block_until(failures, now)
        if blocked_until is None:
            return
        opened = self._storage(
            self.ledger.open_ip_block,
            ip_address,
            blocked_at=now,
            blocked_until=blocked_until,
            reason=IP_BLOCK_REASON,
        )
        if opened:
            self.metrics.observe_ip_block()
            logger.warning(
                "%s ip blocked failures=%s until=%s",
                BRUTE_FORCE_PREFIX,
                failures,
                blocked_until.isoformat(),
                extra={"ip_address": ip_address},
            )

    def _ip_anchor(self, block: Optional[IpBlockRecord], now: datetime) -> datetime:
        anchor = now - self.policy.config.failure_window
        if block is not None and block.blocked_until is not None and anchor < block.blocked_until <= now:
            anchor = block.blocked_until
        return anchor

    def _record(self, attempt: LoginAttempt) -> bool:
        """Returns False when the attempt was lost and the login flow carries on."""
        try:
            self._storage(self.ledger.record, attempt)
        except StorageUnavailable:
            if self.fail_mode is FailMode.CLOSED:
                raise
            logger.error(
                "%s attempt not recorded, continuing",
                BRUTE_FORCE_PREFIX,
                extra={"identifier": attempt.identifier, "ip_address": attempt.ip_address},
            )
            return False
        return True

    def _storage(self, operation: Callable[..., T], *args, **kwargs) -> T:
        """Runs a ledger call, retrying once after a short backoff."""
        try:
            return operation(*args, **kwargs)
        except StorageUnavailable as exc:
            logger.warning(
                "%s ledger call %s failed, retrying: %s",
                BRUTE_FORCE_PREFIX,
                getattr(operation, "__name__", "operation"),
                exc,
            )
        self._sleep(self.retry_backoff_seconds)
        try:
            return operation(*args, **kwargs)
        except StorageUnavailable:
            logger.error(
                "%s ledger call %s failed after retry",
                BRUTE_FORCE_PREFIX,
                getattr(operation, "__name__", "operation"),
            )
            raise

    def _degraded_verdict(self, identifier: str) -> LoginVerdict:
        if self.fail_mode is FailMode.OPEN:
            logger.error("%s ledger unavailable, failing open", BRUTE_FORCE_PREFIX, extra={"identifier": identifier})
            return LoginVerdict(
                allowed=True,
                locked_until=None,
                reason=Reason.NONE,
                remaining_attempts=self.policy.config.failure_threshold,
                degraded=True,
            )
        logger.error("%s ledger unavailable, failing closed", BRUTE_FORCE_PREFIX, extra={"identifier": identifier})
        return LoginVerdict(
            allowed=False,
            locked_until=None,
            reason=Reason.THROTTLED,
            remaining_attempts=0,
            degraded=True,
        )


def _validate_identifier(identifier: object) -> str:
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidInput(["identifier is required"])
    normalized = identifier.strip().lower()
    if len(normalized) > MAX_IDENTIFIER_LENGTH:
        raise InvalidInput([f"identifier must be at most {MAX_IDENTIFIER_LENGTH} characters"])
    return normalized


def _validate_ip(ip_address: object) -> str:
    if not isinstance(ip_address, str) or not ip_address.strip():
        raise InvalidInput(["ipAddress is required"])
    normalized = ip_address.strip()
    if len(normalized) > MAX_IP_LENGTH:
        raise InvalidInput([f"ipAddress must be at most {MAX_IP_LENGTH} characters"])
    return normalized


def _validate_attempt(
    identifier: object, ip_address: object, user_agent: object, success: object
) -> tuple[str, str, str]:
    errors: list[str] = []
    normalized: list[str] = []
    for validate, value in ((_validate_identifier, identifier), (_validate_ip, ip_address)):
        try:
            normalized.append(validate(value))
        except InvalidInput as exc:
            errors.extend(exc.errors)
    if user_agent is not None and not isinstance(user_agent, str):
        errors.append("userAgent must be a string")
    if not isinstance(success, bool):
        errors.append("success must be a boolean")
    if errors:
        raise InvalidInput(errors)
    return normalized[0], normalized[1], (user_agent or "")[:MAX_USER_AGENT_LENGTH]
