"""Entry point for odio-api."""

import asyncio
import logging
import signal
import sys

from . import __version__
from .backend import BluetoothBackend
from .config import AppConfig
from .status import AdapterStatus
from .web.events import EventBus
from .web.log_handler import WebSocketLogHandler
from .web.server import WebServer

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("odio_api")


def setup_logging(level_name: str) -> None:
    """Log to stdout (journald picks it up under systemd)."""
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    for noisy in ("dbus_next", "aiohttp"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _attach_log_stream(event_bus: EventBus) -> WebSocketLogHandler:
    handler = WebSocketLogHandler(event_bus)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


def _stop_on_signals(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handler(signame: str) -> None:
        logger.info("Received %s, shutting down", signame)
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handler, sig.name)


async def main() -> None:
    """Run the API until SIGTERM/SIGINT."""
    config = AppConfig.load()
    setup_logging(config.log_level)
    logger.info("odio-api v%s starting (config: %s)", __version__, config.source or "defaults")

    event_bus = EventBus()
    log_stream = _attach_log_stream(event_bus)

    def publish_status(status: AdapterStatus) -> None:
        event_bus.emit("bluetooth_status", status.to_dict())

    backend = await BluetoothBackend.create(config.bluetooth, on_status_change=publish_status)
    server = WebServer(backend, event_bus, config.host, config.port, log_handler=log_stream)

    stop = asyncio.Event()
    _stop_on_signals(stop)
    try:
        await server.start()
        await stop.wait()
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
    finally:
        # Stop taking requests before the adapter is powered down
        await server.stop()
        if backend is not None:
            await backend.close()
        logging.getLogger().removeHandler(log_stream)
        logger.info("Goodbye.")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
