"""Standardized error handling and response schemas for the REST API.

Error Response Format:
    All errors return JSON with this structure:
    {
        "code": "NOT_FOUND",
        "message": "Human-readable description",
        "details": {"additional": "context"}
    }

Engine exceptions map to HTTP responses in one place:
    ConfigError     -> 400 CONFIG_ERROR
    NotFoundError   -> 404 NOT_FOUND
    JobStartError   -> 502 STREAM_START_FAILED
    anything else   -> 500 INTERNAL_ERROR

Logging Strategy:
    DEBUG - Error creation, response formatting
    INFO  - Client errors (4xx)
    WARN  - Validation errors
    ERROR - Server errors (5xx), unexpected exceptions
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional
import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from ..middleware.request_id import get_request_id
from ..exceptions import (
    ConfigError,
    JobStartError,
    NotFoundError,
    ProcessExitError,
    StartTimeoutError,
    SupervisorError,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response schema for all API errors.

    Attributes:
        code: Machine-readable error code (from ErrorCode enum)
        message: Human-readable error message for display
        details: Optional additional context
    """

    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "code": "NOT_FOUND",
                    "message": "Job job-1730000000000-1 not found",
                    "details": {"job_id": "job-1730000000000-1"}
                }
            ]
        }
    }


class ErrorCode(str, Enum):
    """Standardized error codes for the API."""

    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    STREAM_START_FAILED = "STREAM_START_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


def create_error_response(
    code: ErrorCode | str,
    message: str,
    details: Optional[dict[str, Any]] = None
) -> ErrorResponse:
    """Create a standardized error response."""
    code_str = code.value if isinstance(code, ErrorCode) else code
    logger.debug(f"Creating error response: code={code_str}, message={message}")
    return ErrorResponse(code=code_str, message=message, details=details)


# ============================================================================
# Specialized Error Raisers
# ============================================================================

def raise_not_found(resource: str, resource_id: str) -> None:
    """Raise a standardized 404 error.

    Raises:
        HTTPException: 404 error with standardized format
    """
    logger.debug(f"Resource not found: {resource} with id={resource_id}")
    error = create_error_response(
        code=ErrorCode.NOT_FOUND,
        message=f"{resource.capitalize()} {resource_id} not found",
        details={"resource": resource, "id": resource_id}
    )
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error.model_dump()
    )


# ============================================================================
# Engine Exception Mapping
# ============================================================================

def supervisor_error_to_response(exc: SupervisorError) -> tuple[int, ErrorResponse]:
    """Map an engine exception to (status_code, ErrorResponse)."""
    details: dict[str, Any] = {}
    if exc.job_id:
        details["job_id"] = exc.job_id

    if isinstance(exc, ConfigError):
        return status.HTTP_400_BAD_REQUEST, create_error_response(
            ErrorCode.CONFIG_ERROR, exc.message, details or None
        )

    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND, create_error_response(
            ErrorCode.NOT_FOUND, exc.message, details or None
        )

    if isinstance(exc, JobStartError):
        details["reason"] = type(exc).__name__
        if isinstance(exc, ProcessExitError):
            details["exit_code"] = exc.exit_code
            details["signal"] = exc.signal_name
            if exc.status is not None:
                details["status"] = jsonable_encoder(exc.status)
        elif isinstance(exc, StartTimeoutError):
            details["timeout_seconds"] = exc.timeout
        return status.HTTP_502_BAD_GATEWAY, create_error_response(
            ErrorCode.STREAM_START_FAILED, exc.message, details
        )

    return status.HTTP_500_INTERNAL_SERVER_ERROR, create_error_response(
        ErrorCode.INTERNAL_ERROR, exc.message, details or None
    )


# ============================================================================
# Global Exception Handlers
# ============================================================================

async def supervisor_exception_handler(
    request: Request,
    exc: SupervisorError
) -> JSONResponse:
    """Handle engine exceptions raised by route handlers."""
    status_code, error = supervisor_error_to_response(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=error.model_dump())


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Handle request body validation failures (422)."""
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        f"Validation failed: {request.method} {request.url.path} "
        f"({len(errors)} error(s))"
    )
    logger.debug(f"Validation errors: {errors}")

    error = create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        details={"errors": errors}
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error.model_dump()
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """Handle HTTPException; pre-formatted details pass through."""
    if exc.status_code >= 500:
        logger.error(
            f"Server error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )
    else:
        logger.info(
            f"Client error: {request.method} {request.url.path} "
            f"-> {exc.status_code}: {exc.detail}"
        )

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    code = ErrorCode.NOT_FOUND if exc.status_code == status.HTTP_404_NOT_FOUND else ErrorCode.INTERNAL_ERROR
    error = create_error_response(
        code=code,
        message=str(exc.detail) if exc.detail else "An error occurred"
    )
    return JSONResponse(status_code=exc.status_code, content=error.model_dump())


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions.

    Logs the stack trace but returns a generic message so internal details
    (and credentials) never reach clients.
    """
    logger.error(
        f"Unhandled exception: {request.method} {request.url.path} "
        f"-> {type(exc).__name__}: {str(exc)}",
        exc_info=exc
    )
    error = create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An internal server error occurred",
        details={"request_id": get_request_id(request)}
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.model_dump()
    )


logger.debug("Error handling module initialized")
