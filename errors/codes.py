"""
Error code catalog for the session replication core.

This module defines all error codes raised by the session manager,
covering session store failures, missing or invalidated sessions,
attribute serialization failures, and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used by the session manager.

    Each error code maps to the HTTP status code the host adapter
    answers with when the error escapes a request:
    - Session errors (4xx): The client refers to a session that is gone
    - Store errors (5xx): Redis is unreachable or misbehaving
    - Internal errors (5xx): Server-side issues
    """

    # Session errors (4xx)
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    """Session does not exist or has expired (HTTP 404)"""

    SESSION_INVALIDATED = "SESSION_INVALIDATED"
    """Session was invalidated and can no longer be used (HTTP 410)"""

    # Store errors (5xx)
    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Redis unreachable or returned a protocol error (HTTP 503)"""

    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"
    """Stored session data could not be encoded or decoded (HTTP 500)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_INVALIDATED: 410,
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.SERIALIZATION_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
