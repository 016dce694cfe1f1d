from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("pecsboard.errors")


class PecsboardError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}


class Unauthenticated(PecsboardError):
    status_code = 401
    code = "unauthorized"


class Forbidden(PecsboardError):
    status_code = 403
    code = "forbidden"


class NotFound(PecsboardError):
    status_code = 404
    code = "not_found"


class Conflict(PecsboardError):
    status_code = 409
    code = "conflict"


class ValidationError(PecsboardError):
    status_code = 400
    code = "validation_error"


class RateLimited(PecsboardError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or f"Too many requests. Please try again in {retry_after} seconds.", details)
        self.retry_after = retry_after


class QuotaExceeded(RateLimited):
    code = "quota_exceeded"


class DependencyUnavailable(PecsboardError):
    status_code = 500
    code = "dependency_unavailable"


def json_error(code: str, message: str, details: Optional[dict] = None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "requestId": str(uuid.uuid4()),
        }
    }


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PecsboardError)
    def handle_pecsboard_error(request: Request, exc: PecsboardError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=json_error(exc.code, exc.message, exc.details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content=json_error("validation_error", "invalid request", {"fields": fields}),
        )

    @app.exception_handler(SQLAlchemyError)
    def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        # Authorization and consistency checks never fail open.
        logger.error("database error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=json_error("internal_error", "Internal server error"),
        )
