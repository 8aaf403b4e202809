"""
Exception handlers for applications hosting the session manager.

Session errors that escape a request handler (an invalidated session
being touched, a store outage while persisting on demand) are turned
into structured JSON error responses carrying the request id.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors.codes import ErrorCode
from errors.exceptions import AppException, internal_error
from telemetry.service import get_request_id

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """
    Structured error response body.

    Every session error answered by the host follows this format so
    clients can tell a lost session apart from a store outage.
    """
    error_code: str
    message: str
    details: Optional[dict[str, Any]] = None
    request_id: str


def build_error_response(exc: AppException, request_id: str) -> JSONResponse:
    """
    Build the JSON response for a session error.

    Args:
        exc: The AppException to render
        request_id: Correlation id of the failing request

    Returns:
        JSONResponse with the exception's status code
    """
    error_response = ErrorResponse(
        error_code=exc.error_code.value,
        message=exc.message,
        details=exc.details,
        request_id=request_id,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(exclude_none=True),
    )


async def handle_app_exception(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle session exceptions raised by route handlers.

    Args:
        request: The FastAPI request object
        exc: The AppException that was raised

    Returns:
        JSONResponse with structured error format
    """
    request_id = getattr(request.state, "request_id", None) or get_request_id()

    logger.warning(
        "Session error occurred",
        extra={
            "extra_data": {
                "error_code": exc.error_code.value,
                "error_message": exc.message,
                "status_code": exc.status_code,
                "details": exc.details,
                "path": request.url.path,
                "method": request.method,
            }
        }
    )

    return build_error_response(exc, request_id)


async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions without exposing internal details.

    The full stack trace is logged; the client gets a generic
    INTERNAL_ERROR body.
    """
    request_id = getattr(request.state, "request_id", None) or get_request_id()

    logger.error(
        "Unexpected error occurred",
        exc_info=exc,
        extra={
            "extra_data": {
                "error_code": ErrorCode.INTERNAL_ERROR.value,
                "exception_type": type(exc).__name__,
                "path": request.url.path,
                "method": request.method,
            }
        }
    )

    return build_error_response(
        internal_error("An unexpected error occurred. Please try again later."),
        request_id,
    )


def register_exception_handlers(app) -> None:
    """
    Register the session exception handlers with a FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    app.add_exception_handler(AppException, handle_app_exception)
    app.add_exception_handler(Exception, handle_unexpected_exception)
    logger.debug("Session exception handlers registered")
