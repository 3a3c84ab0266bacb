"""REST and WebSocket endpoints."""

import asyncio
import logging
import platform
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import WSMsgType, web
from aiohttp.web import WebSocketResponse
from dbus_next.errors import DBusError

from .. import __version__
from ..bluez.errors import BusTimeoutError

if TYPE_CHECKING:
    from ..backend import BluetoothBackend
    from .events import EventBus
    from .log_handler import WebSocketLogHandler

logger = logging.getLogger(__name__)

OS_RELEASE_FILE = "/etc/os-release"
UNKNOWN = "unknown"

# Map common BlueZ D-Bus error names to user-friendly messages
_BLUEZ_ERROR_MAP = {
    "org.bluez.Error.NotReady": "Bluetooth adapter is not ready. Try again in a moment.",
    "org.bluez.Error.Busy": "Bluetooth adapter is busy. Try again in a moment.",
    "org.bluez.Error.Failed": "Bluetooth adapter refused the request.",
    "org.bluez.Error.NotPermitted": "Operation not permitted by BlueZ.",
    "org.freedesktop.DBus.Error.AccessDenied": "Permission denied talking to BlueZ.",
    "org.freedesktop.DBus.Error.ServiceUnknown": "BlueZ is not running.",
}


def _friendly_error(e: Exception) -> str:
    """Convert a DBusError or other exception to a user-friendly message."""
    if isinstance(e, DBusError) and e.type in _BLUEZ_ERROR_MAP:
        return _BLUEZ_ERROR_MAP[e.type]
    # Don't leak raw D-Bus internals to the client
    logger.debug("Unmapped error returned to client: %s", e)
    return "Operation failed. Check logs for details."


def read_os_version(path: str = OS_RELEASE_FILE) -> str:
    """Return PRETTY_NAME (or NAME VERSION_ID) from os-release."""
    try:
        text = Path(path).read_text()
    except OSError:
        return UNKNOWN
    values = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    if values.get("PRETTY_NAME"):
        return values["PRETTY_NAME"]
    name = " ".join(v for v in (values.get("NAME"), values.get("VERSION_ID")) if v)
    return name or UNKNOWN


def server_info(backend: "BluetoothBackend | None") -> dict:
    return {
        "hostname": socket.gethostname(),
        "os_platform": f"{platform.system().lower()}/{platform.machine()}",
        "os_version": read_os_version(),
        "api_sw": "odio-api",
        "api_version": __version__,
        "backends": {"bluetooth": backend is not None},
    }


async def _run_action(action: Callable[[], Awaitable[None]], name: str) -> web.Response:
    """Run a backend action: 202 on success, error JSON otherwise."""
    try:
        await action()
    except BusTimeoutError as e:
        logger.warning("Bluetooth %s timed out: %s", name, e)
        return web.json_response(
            {"error": "Bluetooth adapter did not answer in time."}, status=504
        )
    except DBusError as e:
        logger.error("Bluetooth %s failed: %s", name, e)
        return web.json_response({"error": _friendly_error(e)}, status=500)
    except Exception as e:
        logger.error("Bluetooth %s failed: %s", name, e, exc_info=True)
        return web.json_response({"error": _friendly_error(e)}, status=500)
    return web.json_response({"status": "accepted"}, status=202)


async def _ws_sender(ws: WebSocketResponse, queue: asyncio.Queue) -> None:
    """Forward EventBus events to a WebSocket client."""
    try:
        while not ws.closed:
            msg = await queue.get()
            await ws.send_json({"type": msg["event"], **msg["data"]})
    except (ConnectionResetError, ConnectionError):
        pass


def create_api_routes(
    backend: "BluetoothBackend | None",
    event_bus: "EventBus",
    log_handler: "WebSocketLogHandler | None" = None,
) -> web.RouteTableDef:
    """Create all route definitions.

    Bluetooth routes only exist when the backend is enabled.
    """
    routes = web.RouteTableDef()

    @routes.get("/health")
    async def health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    @routes.get("/server")
    async def server(request: web.Request) -> web.Response:
        return web.json_response(server_info(backend))

    @routes.get("/ws")
    async def websocket(request: web.Request) -> WebSocketResponse:
        """Stream status changes and log entries to the client."""
        ws = WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        queue = event_bus.subscribe()
        sender = asyncio.create_task(_ws_sender(ws, queue))
        try:
            if log_handler is not None:
                for entry in list(log_handler.recent_logs):
                    await ws.send_json({"type": "log_entry", **entry})
            for msg in event_bus.latest():
                await ws.send_json({"type": msg["event"], **msg["data"]})
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.debug("WebSocket closed with error: %s", ws.exception())
                    break
        finally:
            event_bus.unsubscribe(queue)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
        return ws

    if backend is None:
        return routes

    @routes.get("/bluetooth")
    async def bluetooth_status(request: web.Request) -> web.Response:
        return web.json_response(backend.get_status().to_dict())

    @routes.post("/bluetooth/power_up")
    async def bluetooth_power_up(request: web.Request) -> web.Response:
        return await _run_action(backend.power_up, "power up")

    @routes.post("/bluetooth/power_down")
    async def bluetooth_power_down(request: web.Request) -> web.Response:
        return await _run_action(backend.power_down, "power down")

    @routes.post("/bluetooth/pairing_mode")
    async def bluetooth_pairing_mode(request: web.Request) -> web.Response:
        return await _run_action(backend.new_pairing, "pairing")

    return routes
