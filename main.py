"""
Application factory for a FastAPI service hosting the session manager.

    uvicorn main:create_app --factory

The manager is built from settings at startup with an eagerly verified
Redis connection; a missing or unreachable store stops startup with a
ConfigurationError.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from config.settings import Settings, get_settings
from errors.handlers import register_exception_handlers
from middleware.session import SessionMiddleware
from session.manager import RedisSessionManager
from telemetry.service import initialize_telemetry

logger = logging.getLogger(__name__)


async def _scavenge_periodically(manager: RedisSessionManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            manager.scavenge()
        except Exception:
            logger.exception("Session scavenging failed")


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[RedisSessionManager] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to get_settings().
        manager: Pre-built session manager; defaults to one built from
            settings with RedisSessionManager.from_settings().

    Returns:
        The configured application.

    Raises:
        ConfigurationError: If settings are invalid or the store cannot be
            reached.
    """
    settings = settings or get_settings()
    initialize_telemetry(settings)
    if manager is None:
        manager = RedisSessionManager.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.start()
        scavenger = asyncio.create_task(
            _scavenge_periodically(manager, settings.scavenge_interval_sec)
        )
        try:
            yield
        finally:
            scavenger.cancel()
            with suppress(asyncio.CancelledError):
                await scavenger
            manager.stop()

    app = FastAPI(title="Session Replication Service", version="1.0.0", lifespan=lifespan)
    app.state.session_manager = manager

    register_exception_handlers(app)
    app.add_middleware(
        SessionMiddleware,
        manager=manager,
        cookie_name=settings.session_cookie_name,
    )

    @app.get("/health/live")
    async def health_live():
        return {"status": "healthy"}

    @app.get("/health/ready")
    async def health_ready():
        healthy = await run_in_threadpool(manager.store.health_check)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "node": manager.node_name,
                "cached_sessions": len(manager),
            },
        )

    return app
