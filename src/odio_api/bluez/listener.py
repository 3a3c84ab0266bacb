"""Generic D-Bus signal listener.

A ``SignalListener`` adds one or more match rules on the bus daemon,
queues every matching ``PropertiesChanged`` signal and hands them to a
callback one at a time, in arrival order.  The callback returns True to
stop listening.  The listener also stops when its deadline passes, when
``stop()`` is called, when the parent event is set (backend shutdown) or
when the bus connection goes away.  Whatever the reason, the match rules
are removed and the message handler is detached on exit.

Listeners are single-use: create, ``start()``, then stop or let them run
out.  They are never restarted.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from dbus_next import Message, MessageType, Variant
from dbus_next.errors import DBusError

from .constants import BLUEZ_SERVICE, PROPERTIES_CHANGED, PROPERTIES_INTERFACE
from .errors import BusTimeoutError, SignalError
from .gateway import BusGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchRule:
    """A D-Bus match rule, usable both on the bus daemon and locally."""

    interface: str = PROPERTIES_INTERFACE
    member: str = PROPERTIES_CHANGED
    sender: str | None = BLUEZ_SERVICE
    path_namespace: str | None = None
    arg0: str | None = None

    def __str__(self) -> str:
        parts = ["type='signal'"]
        if self.sender:
            parts.append(f"sender='{self.sender}'")
        parts.append(f"interface='{self.interface}'")
        parts.append(f"member='{self.member}'")
        if self.path_namespace:
            parts.append(f"path_namespace='{self.path_namespace}'")
        if self.arg0:
            parts.append(f"arg0='{self.arg0}'")
        return ",".join(parts)

    def matches(self, msg: Message) -> bool:
        """Apply the rule to an incoming message.

        The sender is not compared here: signals carry the unique
        connection name of the emitter, not its well-known name.
        """
        if msg.message_type != MessageType.SIGNAL:
            return False
        if msg.interface != self.interface or msg.member != self.member:
            return False
        if self.path_namespace:
            path = msg.path or ""
            if path != self.path_namespace and not path.startswith(self.path_namespace + "/"):
                return False
        if self.arg0 is not None:
            if not msg.body or msg.body[0] != self.arg0:
                return False
        return True


@dataclass
class PropertiesChanged:
    """A parsed org.freedesktop.DBus.Properties.PropertiesChanged signal."""

    path: str
    interface: str
    changed: dict[str, Any] = field(default_factory=dict)
    invalidated: list[str] = field(default_factory=list)

    @classmethod
    def from_message(cls, msg: Message) -> "PropertiesChanged":
        """Parse a signal message, raising SignalError when malformed."""
        body = msg.body or []
        if len(body) < 2:
            raise SignalError("body too short")
        interface, changed = body[0], body[1]
        if not isinstance(interface, str):
            raise SignalError("interface name is not a string")
        if not isinstance(changed, dict):
            raise SignalError("changed properties is not a dict")
        invalidated = body[2] if len(body) > 2 and isinstance(body[2], list) else []
        return cls(
            path=msg.path or "",
            interface=interface,
            changed={
                k: (v.value if isinstance(v, Variant) else v)
                for k, v in changed.items()
            },
            invalidated=list(invalidated),
        )

    def get_bool(self, name: str) -> bool | None:
        """Return a changed boolean property, or None if absent/not a bool."""
        value = self.changed.get(name)
        return value if isinstance(value, bool) else None


# Return True to stop the listener; may be a coroutine function.
SignalCallback = Callable[[PropertiesChanged], "bool | Awaitable[bool]"]


class SignalListener:
    """Subscribes to signals matching rules and dispatches them to a callback."""

    QUEUE_SIZE = 10

    def __init__(
        self,
        gateway: BusGateway,
        rules: MatchRule | list[MatchRule],
        callback: SignalCallback,
        *,
        parent: asyncio.Event | None = None,
        timeout: float | None = None,
        name: str = "listener",
    ):
        self._gateway = gateway
        self._rules = [rules] if isinstance(rules, MatchRule) else list(rules)
        self._callback = callback
        self._parent = parent
        self._timeout = timeout
        self._name = name
        self._queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._started = False
        self.completed = False  # True when the callback asked to stop

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe on the bus and launch the dispatch loop.

        Raises DBusError/BusTimeoutError if a match rule cannot be added;
        rules added before the failure are removed again.
        """
        if self._started:
            raise RuntimeError(f"{self._name} has already been started")
        self._started = True

        added: list[MatchRule] = []
        try:
            for rule in self._rules:
                await self._gateway.add_match(str(rule))
                added.append(rule)
        except (DBusError, BusTimeoutError):
            await self._remove_matches(added)
            raise

        deadline = None
        if self._timeout is not None:
            deadline = asyncio.get_running_loop().time() + self._timeout
        self._gateway.bus.add_message_handler(self._on_message)
        self._task = asyncio.create_task(self._listen(deadline), name=self._name)
        logger.debug("%s started (rules=%s)", self._name, [str(r) for r in self._rules])

    def stop(self) -> None:
        """Ask the dispatch loop to exit; it does so within one cycle."""
        self._stop_event.set()

    async def wait(self) -> None:
        """Wait until the dispatch loop has exited and cleaned up."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def _on_message(self, msg: Message) -> bool:
        if self._stop_event.is_set():
            return False
        if not any(rule.matches(msg) for rule in self._rules):
            return False
        try:
            self._queue.put_nowait(msg)
        except asyncio.QueueFull:
            logger.warning("%s: signal queue full, dropping signal from %s", self._name, msg.path)
        return False  # don't consume

    async def _listen(self, deadline: float | None) -> None:
        loop = asyncio.get_running_loop()
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        if self._parent is not None:
            waiters.append(asyncio.ensure_future(self._parent.wait()))
        waiters.append(asyncio.ensure_future(self._gateway.disconnected.wait()))
        get_task: asyncio.Future | None = None
        try:
            while True:
                if get_task is None:
                    get_task = asyncio.ensure_future(self._queue.get())

                remaining = None
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        logger.debug("%s: deadline reached", self._name)
                        return

                done, _ = await asyncio.wait(
                    [get_task, *waiters],
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if any(w in done for w in waiters):
                    logger.debug("%s: stopped", self._name)
                    return
                if get_task not in done:
                    continue  # deadline, checked at the top of the loop

                msg = get_task.result()
                get_task = None
                if await self._dispatch(msg):
                    self.completed = True
                    logger.debug("%s: callback signalled completion", self._name)
                    return
        finally:
            pending = [w for w in waiters if not w.done()]
            if get_task is not None and not get_task.done():
                pending.append(get_task)
            for fut in pending:
                fut.cancel()
            self._stop_event.set()
            self._gateway.bus.remove_message_handler(self._on_message)
            await self._remove_matches(self._rules)

    async def _dispatch(self, msg: Message) -> bool:
        """Run the callback for one signal; errors never kill the loop."""
        try:
            signal = PropertiesChanged.from_message(msg)
        except SignalError as e:
            logger.debug("%s: ignoring malformed signal from %s: %s", self._name, msg.path, e)
            return False
        try:
            result = self._callback(signal)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: callback failed for signal from %s", self._name, signal.path)
            return False
        return bool(result)

    async def _remove_matches(self, rules: list[MatchRule]) -> None:
        if self._gateway.disconnected.is_set():
            return
        for rule in rules:
            try:
                await self._gateway.remove_match(str(rule))
            except (DBusError, BusTimeoutError) as e:
                logger.warning("%s: failed to remove match rule %s: %s", self._name, rule, e)
