from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SATimeoutError
from starlette.responses import Response

from settlement.core.errors import SettlementError

_APP_START_MONOTONIC = time.monotonic()

_SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "2000"))

_QUIET_PATHS = {"/health", "/healthz"}


def _pool_status() -> str | None:
    try:
        from settlement.database import engine

        return engine.pool.status()
    except Exception:
        return None


def _app_logger(request: Request) -> logging.Logger:
    return getattr(request.app.state, "logger", None) or logging.getLogger("settlement")


def uptime_seconds() -> float:
    return max(0.0, time.monotonic() - _APP_START_MONOTONIC)


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def request_id_from(request: Request | None) -> str | None:
    if request is None:
        return None
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Map engine errors to their HTTP status with a stable body."""

    request_id = request_id_from(request) or str(uuid.uuid4())
    level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    _app_logger(request).log(
        level,
        "settlement_error",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "code": exc.code,
            "error": exc.message,
        },
    )
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "code": exc.code,
            "detail": exc.message,
            "context": exc.context,
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns a structured error response.

    Logs the traceback and returns a JSON body without internal details.
    """
    request_id = request_id_from(request) or str(uuid.uuid4())

    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "exception_type": type(exc).__name__,
    }
    _app_logger(request).exception("unhandled_exception", extra=extra)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error. Please retry later.",
            "request_id": request_id,
            "code": "INTERNAL_SERVER_ERROR",
        },
        headers={"X-Request-ID": request_id},
    )


async def request_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Request-level logging middleware.

    Adds/propagates X-Request-ID and measures request duration.
    Does not log request/response bodies.
    """

    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    logger = _app_logger(request)

    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    except SATimeoutError as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.error(
            "db_pool_timeout",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
                "error": str(exc),
            },
        )
        raise
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        logger.exception(
            "http_request_failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
            },
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000.0
    if duration_ms >= _SLOW_REQUEST_MS:
        logger.info(
            "slow_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "pool_status": _pool_status(),
            },
        )

    # Avoid noisy logging for liveness endpoints.
    if request.url.path not in _QUIET_PATHS:
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

    response.headers.setdefault("X-Request-ID", request_id)
    return response
