from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from login_guard.core.config import BRUTE_FORCE_RETENTION_DAYS
from login_guard.core.metrics import request_metrics
from login_guard.deps import get_guard, require_admin_token
from login_guard.routers.brute_force import iso_utc, status_payload
from login_guard.services.brute_force_guard import BruteForceGuard

router = APIRouter(
    prefix="/api/admin/security",
    tags=["admin-security"],
    dependencies=[Depends(require_admin_token)],
)


class PrunePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_days: Optional[int] = Field(default=None, alias="olderThanDays", ge=1, le=3650)


@router.get("/accounts/{identifier}")
def account_status(identifier: str, guard: BruteForceGuard = Depends(get_guard)):
    return status_payload(guard.get_account_status(identifier))


@router.post("/accounts/{identifier}/reset")
def reset_account(identifier: str, guard: BruteForceGuard = Depends(get_guard)):
    guard.reset_account_attempts(identifier)
    return {"ok": True, "identifier": identifier.strip().lower()}


@router.get("/ip-blocks/{ip_address}")
def ip_status(ip_address: str, guard: BruteForceGuard = Depends(get_guard)):
    status = guard.get_ip_status(ip_address)
    return {
        "ipAddress": status.ip_address,
        "failureCount": status.failure_count,
        "blocked": status.blocked,
        "blockedUntil": iso_utc(status.blocked_until),
        "reason": status.reason,
    }


@router.delete("/ip-blocks/{ip_address}")
def unblock_ip(ip_address: str, guard: BruteForceGuard = Depends(get_guard)):
    return {"ok": True, "removed": guard.unblock_ip(ip_address)}


@router.get("/metrics")
def security_metrics(
    time_range: str = Query(default="24h", alias="range"),
    guard: BruteForceGuard = Depends(get_guard),
):
    metrics = guard.get_metrics(time_range)
    return {
        "timeRange": metrics.time_range,
        "totalAttempts": metrics.total_attempts,
        "failedAttempts": metrics.failed_attempts,
        "lockedAccounts": metrics.locked_accounts,
        "blockedIPs": metrics.blocked_ips,
        "topAttackers": metrics.top_attackers,
        "process": guard.metrics.snapshot(),
        "requests": request_metrics.snapshot(),
    }


@router.post("/prune")
def prune_attempts(payload: Optional[PrunePayload] = None, guard: BruteForceGuard = Depends(get_guard)):
    days = (payload.older_than_days if payload else None) or BRUTE_FORCE_RETENTION_DAYS
    removed = guard.prune_attempts(timedelta(days=days))
    return {"ok": True, "removed": removed, "olderThanDays": days}
