"""
FastAPI Middleware for the Verification API

Provides CORS configuration, request logging, and global error handling.
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from logging_setup import sanitize_for_logging
from verification.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    VerificationError,
)

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

# Verification error -> HTTP status
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
)


def allowed_origins() -> List[str]:
    """Origins from CORS_ORIGINS (comma-separated) or the localhost defaults."""
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        return [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    return DEFAULT_CORS_ORIGINS


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and response with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = sanitize_for_logging(request.headers.get("X-Request-ID", ""), 100) or str(time.time_ns())

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def verification_exception_handler(request: Request, exc: VerificationError) -> JSONResponse:
    """Map engine errors to their HTTP status."""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = next((status for cls, status in ERROR_STATUS if isinstance(exc, cls)), 500)

    if status_code == 500:
        logger.error(
            "Verification error: code=%s message=%s request_id=%s",
            exc.code, sanitize_for_logging(str(exc)), request_id,
        )
        return create_error_response(
            code=exc.code,
            message="Verification could not be processed. Please try again later.",
            status_code=500,
        )

    logger.info(
        "Rejected request: code=%s message=%s request_id=%s",
        exc.code, sanitize_for_logging(str(exc)), request_id,
    )
    return create_error_response(
        code=exc.code,
        message=str(exc),
        status_code=status_code,
        field=exc.field,
        suggestion=exc.suggestion,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body or path validation failures use the 400 error envelope."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return create_error_response(
        code=ValidationError.code,
        message=first.get("msg", "Invalid request"),
        status_code=400,
        field=field or None,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(VerificationError, verification_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ConfigurationError, global_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
