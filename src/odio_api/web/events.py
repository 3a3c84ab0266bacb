"""Event bus for real-time updates via WebSocket."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class EventBus:
    """Pub/sub using one bounded asyncio.Queue per connected client.

    The latest payload of each *sticky* event type is remembered so a
    client that connects later can be brought up to date.
    """

    QUEUE_SIZE = 64

    def __init__(self, sticky: tuple[str, ...] = ("bluetooth_status",)):
        self._clients: set[asyncio.Queue] = set()
        self._sticky = set(sticky)
        self._latest: dict[str, dict] = {}

    def subscribe(self) -> asyncio.Queue:
        """Add a new client. Returns a queue to read events from."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._clients.add(q)
        logger.debug("EventBus client subscribed (%d total)", len(self._clients))
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._clients.discard(q)
        logger.debug("EventBus client unsubscribed (%d remaining)", len(self._clients))

    def emit(self, event: str, data: dict) -> None:
        """Push an event to all connected clients."""
        if event in self._sticky:
            self._latest[event] = data
        for q in list(self._clients):
            try:
                q.put_nowait({"event": event, "data": data})
            except asyncio.QueueFull:
                # No logging here: log records are themselves events
                pass

    def latest(self) -> list[dict]:
        """Last payload of each sticky event, in the same shape as queued events."""
        return [{"event": e, "data": d} for e, d in self._latest.items()]

    @property
    def client_count(self) -> int:
        return len(self._clients)
