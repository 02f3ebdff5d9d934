"""aiohttp application factory and run loop for the taskseries API."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Optional

from aiohttp import web

from ..config import PlannerSettings
from ..planner import TaskPlanner
from .middleware import actor_middleware, correlation_id_middleware, error_middleware
from .routes import register_task_routes

logger = logging.getLogger(__name__)


def make_app(planner: TaskPlanner) -> web.Application:
    """Create the web application with middleware and routes wired to ``planner``."""
    app = web.Application(
        middlewares=[correlation_id_middleware, actor_middleware, error_middleware]
    )
    register_task_routes(app, planner)

    async def _startup(_app: web.Application) -> None:
        await planner.initialize()

    async def _shutdown(_app: web.Application) -> None:
        logger.info("Application shutdown requested")

    app.on_startup.append(_startup)
    app.on_shutdown.append(_shutdown)
    return app


async def _serve(settings: PlannerSettings, external_stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the server until signalled to stop.

    Args:
        settings: Planner settings, including bind host and port
        external_stop_event: Optional event to signal shutdown. If provided,
            signal handlers will NOT be registered (caller owns signal handling).
    """
    planner = TaskPlanner(settings)
    app = make_app(planner)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.server_host, port=settings.server_port)
    try:
        await site.start()
    except OSError:
        logger.exception("Failed to start server on %s:%d", settings.server_host, settings.server_port)
        await runner.cleanup()
        raise
    logger.info(
        "taskseries API listening on http://%s:%d (database %s)",
        settings.server_host,
        settings.server_port,
        settings.database_path,
    )

    stop_event = external_stop_event or asyncio.Event()
    if external_stop_event is None:
        loop = asyncio.get_running_loop()

        def _on_signal() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_signal)

    await stop_event.wait()
    logger.info("Stop event received, shutting down")
    await runner.cleanup()
    logger.info("Server shutdown complete")


def start_server(settings: PlannerSettings) -> None:
    """Start the asyncio event loop and HTTP server.

    Blocks the calling thread until SIGINT/SIGTERM is received.
    """
    asyncio.run(_serve(settings))
