from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from login_guard.services.attempt_ledger import LoginAttempt
from login_guard.services.guard_errors import PolicyMisconfiguration

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_LOCKOUT_DURATION = timedelta(minutes=15)
DEFAULT_FAILURE_WINDOW = timedelta(minutes=30)
DEFAULT_ESCALATION = (1, 4, 96)
DEFAULT_MAX_LOCKOUT_DURATION = timedelta(hours=24)
DEFAULT_CLEAN_PERIOD = timedelta(days=7)
DEFAULT_CAPTCHA_THRESHOLD = 3
DEFAULT_IP_FAILURE_THRESHOLD = 20
DEFAULT_IP_BLOCK_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class LockoutPolicyConfig:
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    lockout_duration: timedelta = DEFAULT_LOCKOUT_DURATION
    failure_window: timedelta = DEFAULT_FAILURE_WINDOW
    progressive_lockout: bool = True
    escalation: tuple[int, ...] = DEFAULT_ESCALATION
    max_lockout_duration: timedelta = DEFAULT_MAX_LOCKOUT_DURATION
    clean_period: timedelta = DEFAULT_CLEAN_PERIOD
    captcha_threshold: int = DEFAULT_CAPTCHA_THRESHOLD
    ip_failure_threshold: int = DEFAULT_IP_FAILURE_THRESHOLD
    ip_block_duration: timedelta = DEFAULT_IP_BLOCK_DURATION

    def validate(self) -> "LockoutPolicyConfig":
        problems: list[str] = []
        if self.failure_threshold <= 0:
            problems.append("failure_threshold must be positive")
        if self.ip_failure_threshold <= 0:
            problems.append("ip_failure_threshold must be positive")
        if self.captcha_threshold <= 0:
            problems.append("captcha_threshold must be positive")
        for name in ("lockout_duration", "failure_window", "max_lockout_duration", "ip_block_duration"):
            if getattr(self, name) <= timedelta(0):
                problems.append(f"{name} must be positive")
        if self.clean_period < timedelta(0):
            problems.append("clean_period must not be negative")
        if not self.escalation or any(step <= 0 for step in self.escalation):
            problems.append("escalation steps must be positive")
        if self.max_lockout_duration < self.lockout_duration:
            problems.append("max_lockout_duration must not be shorter than lockout_duration")
        if problems:
            raise PolicyMisconfiguration("; ".join(problems))
        return self


@dataclass(frozen=True)
class AccountLockoutState:
    identifier: str
    consecutive_failures: int
    locked_until: Optional[datetime]
    last_attempt_at: Optional[datetime]
    lockout_level: int = 0
    last_lockout_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


@dataclass(frozen=True)
class PolicyDecision:
    locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: int
    failure_count: int
    # True when the caller must persist a lockout that does not exist yet
    new_lockout: bool = False
    lockout_level: int = 0
    requires_captcha: bool = False


def counting_anchor(
    *,
    now: datetime,
    failure_window: timedelta,
    reset_at: Optional[datetime] = None,
    locked_until: Optional[datetime] = None,
) -> datetime:
    """Failures older than the returned instant are not counted.

    An expired lockout consumes the failures that opened it. Attempts sharing
    the instant of a reset or an expiry still count, the success that caused a
    reset is what stops the count.
    """
    anchor = now - failure_window
    if reset_at is not None and reset_at > anchor:
        anchor = reset_at
    if locked_until is not None and locked_until <= now and locked_until > anchor:
        anchor = locked_until
    return anchor


def count_consecutive_failures(attempts: Iterable[LoginAttempt], *, anchor: datetime) -> int:
    """Count failures newest first, stopping at the first permitted success."""
    failures = 0
    for attempt in attempts:
        if attempt.timestamp < anchor:
            break
        if attempt.blocked:
            continue
        if attempt.success:
            break
        failures += 1
    return failures


def derive_state(
    identifier: str,
    attempts: Sequence[LoginAttempt],
    *,
    now: datetime,
    config: LockoutPolicyConfig,
    locked_until: Optional[datetime] = None,
    reset_at: Optional[datetime] = None,
    lockout_level: int = 0,
    last_lockout_at: Optional[datetime] = None,
    last_failure_at: Optional[datetime] = None,
) -> AccountLockoutState:
    anchor = counting_anchor(
        now=now,
        failure_window=config.failure_window,
        reset_at=reset_at,
        locked_until=locked_until,
    )
    active_until = locked_until if locked_until is not None and locked_until > now else None
    return AccountLockoutState(
        identifier=identifier,
        consecutive_failures=count_consecutive_failures(attempts, anchor=anchor),
        locked_until=active_until,
        last_attempt_at=attempts[0].timestamp if attempts else None,
        lockout_level=lockout_level,
        last_lockout_at=last_lockout_at,
        last_failure_at=last_failure_at,
    )


class LockoutPolicy:
    """Decides lockouts from ledger-derived state. Holds no state of its own."""

    def __init__(self, config: Optional[LockoutPolicyConfig] = None) -> None:
        self.config = (config or LockoutPolicyConfig()).validate()

    def evaluate(self, state: AccountLockoutState, now: datetime) -> PolicyDecision:
        cfg = self.config
        failures = state.consecutive_failures
        requires_captcha = failures >= cfg.captcha_threshold

        if state.locked_until is not None and state.locked_until > now:
            return PolicyDecision(
                locked=True,
                locked_until=state.locked_until,
                remaining_attempts=0,
                failure_count=failures,
                lockout_level=state.lockout_level,
                requires_captcha=requires_captcha,
            )

        if failures >= cfg.failure_threshold:
            level = self.next_lockout_level(state, now)
            return PolicyDecision(
                locked=True,
                locked_until=now + self.lockout_duration_for(level),
                remaining_attempts=0,
                failure_count=failures,
                new_lockout=True,
                lockout_level=level,
                requires_captcha=requires_captcha,
            )

        return PolicyDecision(
            locked=False,
            locked_until=None,
            remaining_attempts=cfg.failure_threshold - failures,
            failure_count=failures,
            lockout_level=state.lockout_level,
            requires_captcha=requires_captcha,
        )

    def next_lockout_level(self, state: AccountLockoutState, now: datetime) -> int:
        if not self.config.progressive_lockout or state.last_lockout_at is None:
            return 0
        if self.escalation_lapsed(state.last_lockout_at, state.last_failure_at, now):
            return 0
        return state.lockout_level + 1

    def escalation_lapsed(
        self,
        last_lockout_at: Optional[datetime],
        last_failure_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """True once a full clean period passed with neither a lockout nor a counted failure."""
        if last_lockout_at is None:
            return False
        last_activity = max(last_lockout_at, last_failure_at or last_lockout_at)
        return now - last_activity >= self.config.clean_period

    def lockout_duration_for(self, level: int) -> timedelta:
        cfg = self.config
        if not cfg.progressive_lockout:
            return cfg.lockout_duration
        step = cfg.escalation[min(max(level, 0), len(cfg.escalation) - 1)]
        return min(cfg.lockout_duration * step, cfg.max_lockout_duration)

    def ip_block_until(self, ip_failures: int, now: datetime) -> Optional[datetime]:
        if ip_failures >= self.config.ip_failure_threshold:
            return now + self.config.ip_block_duration
        return None
