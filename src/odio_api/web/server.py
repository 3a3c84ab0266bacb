"""aiohttp web server exposing the REST API."""

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from .api import create_api_routes

if TYPE_CHECKING:
    from ..backend import BluetoothBackend
    from .events import EventBus
    from .log_handler import WebSocketLogHandler

logger = logging.getLogger(__name__)


@web.middleware
async def _no_cache(request: web.Request, handler):
    """Status endpoints must never be served from a cache."""
    response = await handler(request)
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


def create_app(
    backend: "BluetoothBackend | None",
    event_bus: "EventBus",
    log_handler: "WebSocketLogHandler | None" = None,
) -> web.Application:
    app = web.Application(middlewares=[_no_cache])
    app.router.add_routes(create_api_routes(backend, event_bus, log_handler))
    return app


class WebServer:
    """HTTP server for the REST API and the event websocket."""

    def __init__(
        self,
        backend: "BluetoothBackend | None",
        event_bus: "EventBus",
        host: str = "0.0.0.0",
        port: int = 8018,
        log_handler: "WebSocketLogHandler | None" = None,
    ):
        self._app = create_app(backend, event_bus, log_handler)
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self) -> None:
        """Start the web server."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Web server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop the web server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Web server stopped")
