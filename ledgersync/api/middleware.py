"""
Middleware for request logging and error mapping.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

import structlog

from ledgersync.api.schemas import create_error_response
from ledgersync.core.exceptions import (
    CircuitOpenError,
    LedgerSyncError,
    NotFoundError,
    ValidationError,
)

logger = structlog.get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        logger.debug("Request started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                process_time=time.perf_counter() - start_time,
            )
            body = create_error_response("An internal server error occurred", "INTERNAL_SERVER_ERROR")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=body.model_dump(mode="json"),
            )

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=process_time,
        )
        return response


def status_for(error: LedgerSyncError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, CircuitOpenError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def ledgersync_error_handler(request: Request, exc: LedgerSyncError) -> JSONResponse:
    code = status_for(exc)
    log = logger.error if code >= 500 else logger.warning
    log("Request rejected", path=request.url.path, error_code=exc.code, error=exc.message)
    body = create_error_response(exc.message, exc.code, exc.details)
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


def add_middleware(app: FastAPI) -> None:
    """Add middleware and exception handlers to the app."""
    app.add_middleware(LoggingMiddleware)
    app.add_exception_handler(LedgerSyncError, ledgersync_error_handler)
