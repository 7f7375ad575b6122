"""
Error Handling
==============

Standardized error codes and exception handlers.

Service-layer errors (``taskapi.core.exceptions``) carry an ``ErrorKind``;
the handlers here turn kinds into status codes.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskapi.core.exceptions import CursorError, ErrorKind, ServiceError
from taskapi.schemas.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Tasks
    CONFLICT = "CONFLICT"
    INVALID_CURSOR = "INVALID_CURSOR"

    # Rate Limit
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT"
    RATE_LIMITER_UNAVAILABLE = "RATE_LIMITER_UNAVAILABLE"

    # General
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


KIND_STATUS = {
    ErrorKind.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

KIND_CODE = {
    ErrorKind.INVALID_ARGUMENT: ErrorCodes.VALIDATION_ERROR,
    ErrorKind.NOT_FOUND: ErrorCodes.NOT_FOUND,
    ErrorKind.CONFLICT: ErrorCodes.CONFLICT,
    ErrorKind.UNAVAILABLE: ErrorCodes.SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: ErrorCodes.INTERNAL_ERROR,
}


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(code: str, message: str, field: Optional[str] = None) -> dict:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, field=field))
    return body.model_dump(exclude_none=True)


async def service_error_handler(
    request: Request,
    exc: ServiceError,
) -> JSONResponse:
    """Map a service error kind onto its HTTP status."""
    status_code = KIND_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if exc.kind == ErrorKind.INTERNAL:
        # details stay in the log; the client gets a generic message
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content=_error_body(ErrorCodes.INTERNAL_ERROR, "An unexpected error occurred"),
        )

    code = ErrorCodes.INVALID_CURSOR if isinstance(exc, CursorError) else KIND_CODE[exc.kind]
    return JSONResponse(
        status_code=status_code,
        content=_error_body(code, exc.message, field=exc.field),
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handler for HTTPException, including router 404/405 responses."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request and Pydantic validation errors."""
    if isinstance(exc, (RequestValidationError, PydanticValidationError)):
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            field = ".".join(str(loc) for loc in first_error.get("loc", []))
            message = first_error.get("msg", "Validation error")
        else:
            field = None
            message = "Validation error"

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(ErrorCodes.VALIDATION_ERROR, message, field=field),
        )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(ErrorCodes.VALIDATION_ERROR, str(exc)),
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(ErrorCodes.INTERNAL_ERROR, "An unexpected error occurred"),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with FastAPI app.

    Usage:
        from taskapi.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
