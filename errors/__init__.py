"""
Error handling module for the session replication core.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException class for session-specific exceptions
- Error response models and FastAPI exception handlers
"""

from errors.codes import ErrorCode
from errors.exceptions import AppException
from errors.handlers import (
    ErrorResponse,
    build_error_response,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "ErrorResponse",
    "build_error_response",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
