"""
Session middleware binding the session manager to a Starlette/FastAPI app.

For every request the middleware:
1. Builds a RequestContext and binds its request id for log correlation
2. Loads the session named by the session cookie (in a worker thread,
   since store calls block) and records the access
3. Exposes the session on request.state.session
4. After the response, issues or clears the session cookie and runs the
   flush decision for the session

Handlers that need a session which may not exist yet call get_session().
Handlers that only serve established sessions call require_session(), which
answers 404 when there is none.
"""

import logging
import secrets
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from errors.codes import ErrorCode
from errors.exceptions import AppException, session_not_found
from errors.handlers import build_error_response
from session.lifecycle import RequestContext
from session.manager import RedisSessionManager
from session.record import SessionRecord
from telemetry.service import reset_request_id, set_request_id

logger = logging.getLogger(__name__)

# Header name for request ID
REQUEST_ID_HEADER = "X-Request-ID"

DEFAULT_COOKIE_NAME = "SESSIONID"


def generate_session_id() -> str:
    """Unguessable session identifier for new sessions."""
    return secrets.token_urlsafe(32)


class SessionMiddleware(BaseHTTPMiddleware):
    """
    Middleware driving the session lifecycle around each request.

    Attributes:
        manager: The started RedisSessionManager
        cookie_name: Name of the cookie carrying the session id
        cookie_path: Path attribute of the session cookie
        secure: Whether the session cookie is marked Secure
    """

    def __init__(
        self,
        app: ASGIApp,
        manager: RedisSessionManager,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        cookie_path: str = "/",
        secure: bool = False,
    ):
        super().__init__(app)
        self.manager = manager
        self.cookie_name = cookie_name
        self.cookie_path = cookie_path
        self.secure = secure

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        context = RequestContext(request_id=request_id)
        token = set_request_id(request_id)

        request.state.request_id = request_id
        request.state.session_context = context
        request.state.session_manager = self.manager
        request.state.session = None
        request.state.session_is_new = False

        try:
            session_id = request.cookies.get(self.cookie_name)
            if session_id:
                try:
                    record = await run_in_threadpool(self.manager.load, session_id, context)
                except AppException as exc:
                    if exc.error_code != ErrorCode.SERIALIZATION_ERROR:
                        return self._load_failed(request, exc, request_id)
                    # an unreadable stored copy counts as no session
                    logger.warning("Discarding unreadable session", extra={
                        "extra_data": {
                            "session_id": session_id,
                            "details": exc.details,
                            "path": request.url.path,
                        }
                    })
                    record = None

                if record is not None and record.is_valid:
                    record.access(self.manager.now())
                    request.state.session = record

            response = await call_next(request)
            await self._complete(request, response, had_cookie=bool(session_id))
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            reset_request_id(token)

    def _load_failed(self, request: Request, exc: AppException, request_id: str) -> Response:
        # the request cannot obtain its session
        logger.error("Failed to load session", extra={
            "extra_data": {
                "error_code": exc.error_code.value,
                "details": exc.details,
                "path": request.url.path,
            }
        })
        response = build_error_response(exc, request_id)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    async def _complete(self, request: Request, response: Response, had_cookie: bool) -> None:
        record: Optional[SessionRecord] = request.state.session

        if record is None or not record.is_valid:
            if had_cookie:
                response.delete_cookie(self.cookie_name, path=self.cookie_path)
            return

        if request.state.session_is_new:
            record.mark_cookie_set()
            response.set_cookie(
                self.cookie_name,
                record.id,
                path=self.cookie_path,
                httponly=True,
                secure=self.secure,
                samesite="lax",
            )

        await run_in_threadpool(self.manager.complete_request, record)


def get_session(request: Request, create: bool = True) -> Optional[SessionRecord]:
    """
    Return the request's session, creating one if asked.

    Args:
        request: The current request, passed through SessionMiddleware.
        create: Create a new session when the request has none.

    Returns:
        The session record, or None if there is none and create is False.
    """
    record: Optional[SessionRecord] = request.state.session
    if record is not None and record.is_valid:
        return record
    if not create:
        return None

    manager: RedisSessionManager = request.state.session_manager
    record = manager.new_session(generate_session_id())
    request.state.session = record
    request.state.session_is_new = True
    return record


async def invalidate_session(request: Request) -> None:
    """Invalidate the request's session, if any, and remove it from the store."""
    record: Optional[SessionRecord] = request.state.session
    if record is None or not record.is_valid:
        return
    manager: RedisSessionManager = request.state.session_manager
    await run_in_threadpool(manager.invalidate, record)


def require_session(request: Request) -> SessionRecord:
    """
    Return the request's existing session.

    Raises:
        AppException: SESSION_NOT_FOUND when the request carries no valid session.
    """
    record = get_session(request, create=False)
    if record is None:
        raise session_not_found(details={"path": request.url.path})
    return record
