"""
Middleware components binding the session manager to web applications.
"""

from middleware.session import (
    SessionMiddleware,
    get_session,
    require_session,
    invalidate_session,
    generate_session_id,
    REQUEST_ID_HEADER,
)

__all__ = [
    "SessionMiddleware",
    "get_session",
    "require_session",
    "invalidate_session",
    "generate_session_id",
    "REQUEST_ID_HEADER",
]
