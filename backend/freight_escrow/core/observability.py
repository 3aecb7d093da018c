from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SATimeoutError
from starlette.responses import Response

from freight_escrow.services.errors import EscrowError, InvalidInput

_APP_START_MONOTONIC = time.monotonic()

_SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "2000"))

_QUIET_PATHS = {"/health", "/healthz", "/api/health"}


def _pool_status() -> str | None:
    try:
        from freight_escrow.database import engine

        return engine.pool.status()
    except Exception:
        return None


def _request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return str(existing)
    return request.headers.get("x-request-id") or str(uuid.uuid4())


def _logger_for(request: Request) -> logging.Logger:
    return getattr(request.app.state, "logger", None) or logging.getLogger("freight_escrow")


def uptime_seconds() -> float:
    return max(0.0, time.monotonic() - _APP_START_MONOTONIC)


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    """Map domain errors to their HTTP status with a generic public message.

    ``exc.details`` may hold payment references and is only logged.
    """

    request_id = _request_id(request)
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    _logger_for(request).log(
        level,
        "escrow_error",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "code": exc.code,
            "category": exc.category,
            "error": str(exc),
            "details": exc.details,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.public_message,
            "code": exc.code,
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies as ``InvalidInput`` without echoing them."""

    # Field locations only; submitted values never reach the logs or the client.
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    error = InvalidInput("request validation failed", fields=fields)
    return await escrow_error_handler(request, error)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns a structured error response.

    This handler catches all unhandled exceptions and returns a clean
    JSON response without exposing internal details to the client.
    """
    request_id = _request_id(request)

    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "exception_type": type(exc).__name__,
    }
    _logger_for(request).exception("unhandled_exception", extra=extra)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error. Please try again later.",
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
    logger = _logger_for(request)

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
