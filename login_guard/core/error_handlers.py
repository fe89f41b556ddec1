from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from login_guard.services.guard_errors import InvalidInput, StorageUnavailable

logger = logging.getLogger(__name__)


async def invalid_input_handler(_: Request, exc: InvalidInput) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid input", "details": exc.errors})


async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    logger.error("[BRUTE_FORCE] storage unavailable endpoint=%s", request.url.path)
    return JSONResponse(status_code=503, content={"error": "storage unavailable"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidInput, invalid_input_handler)
    app.add_exception_handler(StorageUnavailable, storage_unavailable_handler)
