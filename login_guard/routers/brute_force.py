from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool

from login_guard.core.request_context import set_request_context
from login_guard.deps import get_guard
from login_guard.services.brute_force_guard import AccountStatus, BruteForceGuard, LoginVerdict, Reason
from login_guard.services.guard_errors import InvalidInput

router = APIRouter(prefix="/api/auth", tags=["brute-force"])
logger = logging.getLogger(__name__)


class CheckAttemptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["check"]
    identifier: str = Field(..., min_length=1, max_length=255)
    ip_address: str = Field(..., alias="ipAddress", min_length=1, max_length=64)
    user_agent: str = Field(default="", alias="userAgent")
    success: StrictBool


class AccountStatusRequest(BaseModel):
    action: Literal["status"]
    email: str = Field(..., min_length=1, max_length=255)


BruteForceRequest = Annotated[
    Union[CheckAttemptRequest, AccountStatusRequest],
    Field(discriminator="action"),
]
_request_adapter: TypeAdapter[Any] = TypeAdapter(BruteForceRequest)


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def verdict_message(verdict: LoginVerdict, *, success: bool) -> str:
    until = iso_utc(verdict.locked_until)
    if verdict.reason is Reason.LOCKED:
        return f"Account locked until {until}"
    if verdict.reason is Reason.THROTTLED:
        if until is None:
            return "Login temporarily unavailable, try again later"
        return f"IP address blocked until {until}"
    if success:
        return "Login successful"
    if until is not None:
        return f"Account locked until {until} due to too many failed attempts"
    message = f"Invalid credentials. {verdict.remaining_attempts} attempts remaining"
    return message + (". CAPTCHA required." if verdict.requires_captcha else "")


def verdict_payload(verdict: LoginVerdict, *, success: bool) -> dict[str, Any]:
    return {
        "allowed": verdict.allowed,
        "lockedUntil": iso_utc(verdict.locked_until),
        "reason": verdict.reason.value,
        "remainingAttempts": verdict.remaining_attempts,
        "requiresCaptcha": verdict.requires_captcha,
        "degraded": verdict.degraded,
        "message": verdict_message(verdict, success=success),
    }


def status_payload(account: AccountStatus) -> dict[str, Any]:
    return {
        "identifier": account.identifier,
        "locked": account.locked,
        "lockedUntil": iso_utc(account.locked_until),
        "failureCount": account.failure_count,
        "remainingAttempts": account.remaining_attempts,
        "requiresCaptcha": account.requires_captcha,
    }


def _handle_check(payload: CheckAttemptRequest, guard: BruteForceGuard) -> dict[str, Any]:
    set_request_context(identifier=payload.identifier, ip_address=payload.ip_address)
    verdict = guard.check_login_attempt(
        payload.identifier,
        payload.ip_address,
        payload.user_agent,
        payload.success,
    )
    return verdict_payload(verdict, success=payload.success)


def _handle_status(payload: AccountStatusRequest, guard: BruteForceGuard) -> dict[str, Any]:
    set_request_context(identifier=payload.email)
    return status_payload(guard.get_account_status(payload.email))


ACTION_ROUTES: dict[str, Callable[[Any, BruteForceGuard], dict[str, Any]]] = {
    "check": _handle_check,
    "status": _handle_status,
}


def _validation_details(exc: ValidationError) -> list[str]:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ACTION_ROUTES)
        details.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return details


@router.post("/brute-force")
async def brute_force_action(request: Request, guard: BruteForceGuard = Depends(get_guard)):
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput(["body must be a JSON object"]) from None
    if not isinstance(body, dict):
        raise InvalidInput(["body must be a JSON object"])

    action = body.get("action")
    handler = ACTION_ROUTES.get(action) if isinstance(action, str) else None
    if handler is None:
        logger.info("[BRUTE_FORCE] rejected unknown action=%r", action)
        return JSONResponse(status_code=400, content={"error": "invalid action"})

    try:
        payload = _request_adapter.validate_python(body)
    except ValidationError as exc:
        raise InvalidInput(_validation_details(exc)) from exc

    return await run_in_threadpool(handler, payload, guard)
