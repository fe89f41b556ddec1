# login_guard/deps.py
from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from login_guard.core import config
from login_guard.services.brute_force_guard import BruteForceGuard, FailMode
from login_guard.services.guard_errors import PolicyMisconfiguration
from login_guard.services.lockout_policy import LockoutPolicy, LockoutPolicyConfig
from login_guard.services.sql_attempt_ledger import SqlAttemptLedger

logger = logging.getLogger(__name__)


def policy_config_from_settings() -> LockoutPolicyConfig:
    """Builds the lockout policy from environment settings, validating it."""
    return LockoutPolicyConfig(
        failure_threshold=config.BRUTE_FORCE_MAX_ATTEMPTS,
        lockout_duration=timedelta(minutes=config.BRUTE_FORCE_LOCKOUT_MINUTES),
        failure_window=timedelta(minutes=config.BRUTE_FORCE_WINDOW_MINUTES),
        progressive_lockout=config.BRUTE_FORCE_PROGRESSIVE,
        escalation=config.BRUTE_FORCE_ESCALATION,
        max_lockout_duration=timedelta(hours=config.BRUTE_FORCE_MAX_LOCKOUT_HOURS),
        clean_period=timedelta(days=config.BRUTE_FORCE_CLEAN_PERIOD_DAYS),
        captcha_threshold=config.BRUTE_FORCE_CAPTCHA_THRESHOLD,
        ip_failure_threshold=config.BRUTE_FORCE_IP_THRESHOLD,
        ip_block_duration=timedelta(minutes=config.BRUTE_FORCE_IP_BLOCK_MINUTES),
    ).validate()


def build_guard(session_factory: Callable[[], Session]) -> BruteForceGuard:
    try:
        fail_mode = FailMode(config.BRUTE_FORCE_FAIL_MODE)
    except ValueError as exc:
        raise PolicyMisconfiguration(
            f"BRUTE_FORCE_FAIL_MODE must be 'open' or 'closed', got {config.BRUTE_FORCE_FAIL_MODE!r}"
        ) from exc
    if config.BRUTE_FORCE_RETRY_BACKOFF_SECONDS < 0 or config.BRUTE_FORCE_STORAGE_TIMEOUT_SECONDS <= 0:
        raise PolicyMisconfiguration("storage timeout must be positive and retry backoff not negative")

    guard = BruteForceGuard(
        SqlAttemptLedger(session_factory),
        LockoutPolicy(policy_config_from_settings()),
        fail_mode=fail_mode,
        retry_backoff_seconds=config.BRUTE_FORCE_RETRY_BACKOFF_SECONDS,
    )
    logger.info(
        "[BRUTE_FORCE] guard configured threshold=%s window=%s lockout=%s fail_mode=%s",
        guard.policy.config.failure_threshold,
        guard.policy.config.failure_window,
        guard.policy.config.lockout_duration,
        guard.fail_mode.value,
    )
    return guard


def get_guard(request: Request) -> BruteForceGuard:
    guard: Optional[BruteForceGuard] = getattr(request.app.state, "guard", None)
    if guard is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Brute-force guard not initialised",
        )
    return guard


def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    configured = (config.ADMIN_API_TOKEN or "").strip()
    incoming = (x_admin_token or "").strip()
    if not configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin security endpoints require ADMIN_API_TOKEN",
        )
    if not hmac.compare_digest(incoming.encode(), configured.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
