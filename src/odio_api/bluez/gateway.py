"""Timeout-bounded D-Bus method calls.

Every call made by the bluetooth backend goes through ``BusGateway``.  A
call that gets no reply within the configured timeout raises
``BusTimeoutError`` instead of suspending the caller forever; an ERROR
reply raises ``DBusError``.  There are no retries at this layer.
"""

import asyncio
import logging
from typing import Any

from dbus_next import Message, MessageType, Variant
from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError

from .constants import (
    BLUEZ_SERVICE,
    DBUS_INTERFACE,
    DBUS_PATH,
    DBUS_SERVICE,
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
    PROPERTY_SIGNATURES,
)
from .errors import BusTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 5.0


class BusGateway:
    """Issues method calls on a connected bus with a hard timeout."""

    def __init__(self, bus: MessageBus, timeout: float = DEFAULT_CALL_TIMEOUT):
        self._bus = bus
        self._timeout = timeout
        self._disconnected: asyncio.Event | None = None
        self._watch_task: asyncio.Task | None = None

    @property
    def bus(self) -> MessageBus:
        return self._bus

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def disconnected(self) -> asyncio.Event:
        """Event set once the bus connection is gone.

        The first access starts a watcher on the bus, so it must happen
        from inside the running event loop.
        """
        if self._disconnected is None:
            self._disconnected = asyncio.Event()
            self._watch_task = asyncio.create_task(self._watch_disconnect())
        return self._disconnected

    async def _watch_disconnect(self) -> None:
        try:
            await self._bus.wait_for_disconnect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("D-Bus connection lost: %s", e)
        self._disconnected.set()

    def close(self) -> None:
        """Disconnect the bus and wake everything waiting on it."""
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
        if self._disconnected is not None:
            self._disconnected.set()
        self._bus.disconnect()

    async def call(
        self,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list | None = None,
        destination: str = BLUEZ_SERVICE,
    ) -> list:
        """Call *interface.member* on *path* and return the reply body."""
        msg = Message(
            destination=destination,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=body or [],
        )
        try:
            reply = await asyncio.wait_for(self._bus.call(msg), self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "D-Bus call %s.%s on %s timed out after %ss",
                interface, member, path, self._timeout,
            )
            raise BusTimeoutError(f"{interface}.{member}", self._timeout) from None

        if reply is None:
            return []
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body and isinstance(reply.body[0], str) else ""
            raise DBusError(reply.error_name, text, reply)
        return reply.body

    async def get_property(self, path: str, interface: str, name: str) -> Any:
        """Read one property and return its unwrapped value."""
        body = await self.call(
            path, PROPERTIES_INTERFACE, "Get", "ss", [interface, name]
        )
        if not body:
            raise DBusError(
                "org.freedesktop.DBus.Error.InvalidArgs",
                f"empty reply reading {interface}.{name}",
            )
        value = body[0]
        return value.value if isinstance(value, Variant) else value

    async def set_property(
        self, path: str, interface: str, name: str, value: Any, signature: str | None = None
    ) -> None:
        """Write one property, wrapping *value* in a Variant."""
        signature = signature or PROPERTY_SIGNATURES[name]
        await self.call(
            path,
            PROPERTIES_INTERFACE,
            "Set",
            "ssv",
            [interface, name, Variant(signature, value)],
        )

    async def get_managed_objects(self, path: str = "/") -> dict:
        """Return BlueZ's ObjectManager tree (path → interface → properties)."""
        body = await self.call(path, OBJECT_MANAGER_INTERFACE, "GetManagedObjects")
        return body[0] if body else {}

    async def add_match(self, rule: str) -> None:
        """Ask the bus daemon to route signals matching *rule* to us."""
        await self.call(
            DBUS_PATH, DBUS_INTERFACE, "AddMatch", "s", [rule],
            destination=DBUS_SERVICE,
        )

    async def remove_match(self, rule: str) -> None:
        await self.call(
            DBUS_PATH, DBUS_INTERFACE, "RemoveMatch", "s", [rule],
            destination=DBUS_SERVICE,
        )
