"""
FastAPI Middleware for the CreditGate API

Provides CORS configuration, request logging, and global error handling.
Every service error carries an ErrorKind; this module is the single place
where kinds become HTTP statuses.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from errors import CreditGateError, ErrorKind, InputValidationError
from security_logger import get_security_logger
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8080",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8080",
    "http://127.0.0.1:8000",
]

CORS_METHODS = ["GET", "POST", "PATCH", "OPTIONS"]
CORS_EXPOSE_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.AUTHORIZATION_DENIED: 403,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.UPSTREAM_FAILURE: 500,
    ErrorKind.INTERNAL: 500,
}

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."

# Kinds whose message is replaced so no internal detail reaches the caller
OPAQUE_KINDS = (ErrorKind.INTERNAL,)


def _build_cors_regex_pattern(allowed_origins: List[str]) -> tuple:
    """Build regex pattern for CORS from allowed origins list.

    Args:
        allowed_origins: List of allowed origins (may include wildcards like *.example.com)

    Returns:
        Tuple of (combined_regex_pattern or None, exact_origins list)
    """
    regex_patterns = []
    exact_origins = []

    for origin in allowed_origins:
        if origin.startswith("https://*."):
            domain = re.escape(origin[len("https://*."):])
            regex_patterns.append(rf"https://[\w-]+\.{domain}")
        else:
            exact_origins.append(origin)

    if not regex_patterns:
        return None, exact_origins

    combined_regex = "|".join(f"({p})" for p in regex_patterns)
    if exact_origins:
        exact_escaped = "|".join(re.escape(o) for o in exact_origins)
        combined_regex = f"({combined_regex})|({exact_escaped})"

    return combined_regex, exact_origins


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins can be customized via the CORS_ORIGINS environment variable
    (comma-separated). Subdomain wildcards such as https://*.example.com
    are turned into an origin regex.
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",")]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    combined_regex, exact_origins = _build_cors_regex_pattern(allowed_origins)
    origin_options: Dict[str, Any] = (
        {"allow_origin_regex": combined_regex} if combined_regex
        else {"allow_origins": exact_origins}
    )
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=CORS_METHODS,
        allow_headers=["*"],
        expose_headers=CORS_EXPOSE_HEADERS,
        **origin_options,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        security_logger = get_security_logger()
        security_logger.set_request_context(
            request_id,
            user_id=request.headers.get("X-User-ID", ""),
            source_ip=request.client.host if request.client else "",
        )

        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)

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

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise
        finally:
            security_logger.clear_request_context()


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
    details: Optional[Any] = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)
        details: Structured payload, e.g. quota usage or validation issues (optional)

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
    if details:
        error_detail["details"] = details

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def credit_gate_exception_handler(request: Request, exc: CreditGateError) -> JSONResponse:
    """Map a service error to its HTTP status and error body."""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = STATUS_BY_KIND.get(exc.kind, 500)

    if status_code >= 500:
        logger.error(
            "Service error: kind=%s code=%s message=%s request_id=%s",
            exc.kind.value,
            exc.code,
            sanitize_for_logging(exc.message),
            request_id,
        )
    else:
        logger.info(
            "Request refused: kind=%s code=%s request_id=%s",
            exc.kind.value,
            exc.code,
            request_id,
        )

    if exc.kind in OPAQUE_KINDS:
        return create_error_response(
            code="INTERNAL_ERROR",
            message=GENERIC_ERROR_MESSAGE,
            status_code=status_code,
        )

    if isinstance(exc, InputValidationError):
        return create_error_response(
            code=exc.code,
            message=exc.message,
            status_code=status_code,
            field=exc.field,
            suggestion=exc.suggestion,
        )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=status_code,
        details=exc.payload or None,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Turn pydantic request validation errors into a structured issue list."""
    issues = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    first_field = issues[0]["field"] if issues else None
    return create_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        status_code=422,
        field=first_field,
        details=issues,
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
        message=GENERIC_ERROR_MESSAGE,
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
    app.add_exception_handler(CreditGateError, credit_gate_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
