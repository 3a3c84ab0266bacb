"""Bluetooth backend: adapter power, pairing mode and known devices.

Coordinates the sub-components: BlueZ adapter, pairing agent, pairing
sessions and the idle monitor.  The public surface used by the web layer
is ``power_up()``, ``power_down()``, ``new_pairing()``, ``get_status()``
and ``close()``.

Adapter states::

    Off --power_up--> OnIdle --new_pairing--> OnPairing
     ^                  |  ^                      |
     +----power_down----+  +--timeout / paired----+
     +--------------------power_down--------------+
"""

import asyncio
import logging
import math
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta, timezone

from dbus_next import BusType
from dbus_next.aio import MessageBus
from dbus_next.errors import AuthError, DBusError

from .bluez.adapter import BluezAdapter
from .bluez.agent import PairingAgent
from .bluez.constants import adapter_path
from .bluez.device import BluezDevice
from .bluez.errors import BluetoothUnsupportedError, BusTimeoutError
from .bluez.gateway import BusGateway
from .config import BluetoothConfig
from .idle import IdleMonitor
from .pairing import PairingSession
from .status import AdapterStatus, StatusStore

logger = logging.getLogger(__name__)


def _powered_on(s: AdapterStatus) -> None:
    s.powered = True
    s.discoverable = False
    s.pairable = False


def _powered_off(s: AdapterStatus) -> None:
    s.powered = False
    s.discoverable = False
    s.pairable = False
    s.pairing_active = False
    s.pairing_until = None


class BluetoothBackend:
    """Controls one BlueZ adapter over a private system bus connection."""

    def __init__(
        self,
        bus: MessageBus,
        config: BluetoothConfig,
        on_status_change: Callable[[AdapterStatus], None] | None = None,
    ):
        self.config = config
        self.gateway = BusGateway(bus, config.timeout)
        self.adapter = BluezAdapter(self.gateway, adapter_path(config.adapter))
        self.agent = PairingAgent(self.gateway, self)
        self._status = StatusStore(on_change=on_status_change)
        # Set on close(); every listener stops when it is set
        self.closing = asyncio.Event()
        self._pairing_lock = asyncio.Lock()
        self._session: PairingSession | None = None
        self._idle: IdleMonitor | None = None
        if config.idle_timeout > 0:
            self._idle = IdleMonitor(self, config.idle_timeout)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    async def create(
        cls,
        config: BluetoothConfig | None,
        on_status_change: Callable[[AdapterStatus], None] | None = None,
    ) -> "BluetoothBackend | None":
        """Connect to the system bus and return a backend, or None.

        None means the backend is disabled in the configuration or the
        system has no usable Bluetooth adapter; neither is fatal.
        """
        if config is None or not config.enabled:
            logger.info("Bluetooth backend disabled")
            return None

        try:
            bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except (OSError, AuthError, DBusError) as e:
            logger.error("Bluetooth backend unavailable, cannot reach system D-Bus: %s", e)
            return None

        backend = cls(bus, config, on_status_change)
        try:
            await backend.adapter.check_support()
        except (BluetoothUnsupportedError, DBusError, BusTimeoutError) as e:
            logger.error("Bluetooth not supported: %s", e)
            backend.gateway.close()
            return None

        logger.info("Bluetooth backend started on %s", backend.adapter.adapter_path)
        return backend

    # -- Status --

    def get_status(self) -> AdapterStatus:
        """Return a copy of the last recorded status; never fails."""
        return self._status.get()

    def update_status(self, fn: Callable[[AdapterStatus], None]) -> AdapterStatus:
        return self._status.update(fn)

    @property
    def pairing_active(self) -> bool:
        return self._pairing_lock.locked()

    @property
    def idle_monitor(self) -> IdleMonitor | None:
        return self._idle

    @property
    def session(self) -> PairingSession | None:
        return self._session

    async def is_adapter_on(self) -> bool:
        """Read the adapter's Powered property; any failure reads as off."""
        try:
            return await self.adapter.is_powered()
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to get adapter power state: %s", e)
            return False

    async def refresh_known_devices(self) -> None:
        """Rebuild the known device list from BlueZ."""
        try:
            devices = await self.adapter.list_known_devices()
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to list known devices: %s", e)
            return

        def _set_devices(s: AdapterStatus) -> None:
            s.known_devices = devices

        self._status.update(_set_devices)
        logger.debug("Known devices refreshed (%d)", len(devices))

    async def trust_device(self, path: str) -> bool:
        """Mark a device trusted and refresh known devices; False on failure."""
        try:
            await BluezDevice(self.gateway, path).set_trusted(True)
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to trust device %s: %s", path, e)
            return False
        await self.refresh_known_devices()
        return True

    def trust_device_soon(self, path: str) -> None:
        """Trust a device from a synchronous context (the agent)."""
        self._spawn(self.trust_device(path), name=f"trust {path}")

    # -- Power --

    async def power_up(self) -> None:
        """Power the adapter on with discoverable/pairable off.

        Raises DBusError or BusTimeoutError if BlueZ refuses or stalls.
        """
        if await self.is_adapter_on():
            if not self.get_status().powered:
                self._status.update(_powered_on)
            await self._start_idle_monitor()
            return

        await self.adapter.set_powered(True)
        await self.adapter.set_discoverable_and_pairable(False)
        self._status.update(_powered_on)
        await self.refresh_known_devices()
        await self._start_idle_monitor()
        logger.info("Bluetooth ready to connect to already known devices")

    async def power_down(self, *, force: bool = False) -> None:
        """Power the adapter off and reset all flags.

        Without *force* the recorded status decides whether the adapter is
        already off, so a repeated call makes no D-Bus calls at all.
        """
        if force:
            powered = await self.is_adapter_on()
        else:
            powered = self.get_status().powered
        if not powered:
            return

        await self.adapter.set_powered(False)
        self._status.update(_powered_off)
        if self._idle is not None:
            await self._idle.stop()
        if self._session is not None:
            self._session.stop()
        logger.info("Bluetooth powered down")

    async def _start_idle_monitor(self) -> None:
        if self._idle is None:
            logger.debug("Idle timeout disabled, skipping idle monitor")
            return
        await self._idle.start()

    # -- Pairing --

    async def new_pairing(self) -> None:
        """Open a pairing window of ``pairing_timeout`` seconds.

        Returns at once, without any D-Bus call, when a session is already
        running.  Errors before the session starts are raised; after that
        the outcome is only visible through the status.
        """
        if self._pairing_lock.locked():
            logger.info("Pairing already in progress")
            return
        await self._pairing_lock.acquire()

        # Until the session task exists this call owns the lock; after
        # that the session alone releases it.
        handed_off = False
        try:
            await self.agent.register()
            await self.power_up()

            timeout = self.config.pairing_timeout
            # BlueZ reads 0 as "never", so round up to at least one second
            await self.adapter.set_visibility_timeouts(max(1, math.ceil(timeout)))
            await self.adapter.set_discoverable_and_pairable(True)

            pairing_until = datetime.now(timezone.utc) + timedelta(seconds=timeout)

            def _pairing_started(s: AdapterStatus) -> None:
                s.powered = True
                s.discoverable = True
                s.pairable = True
                s.pairing_active = True
                s.pairing_until = pairing_until

            self._status.update(_pairing_started)
            if self._idle is not None:
                await self._idle.cancel_timer()

            session = PairingSession(self, self._pairing_lock, timeout)
            self._session = session
            self._spawn(session.run(), name="pairing-session")
            handed_off = True
        finally:
            if not handed_off:
                self._pairing_lock.release()

        logger.info("Bluetooth pairing mode enabled until %s", pairing_until.isoformat())

    async def on_pairing_finished(self, session: PairingSession) -> None:
        """Called by a session once it has reset the adapter and the lock."""
        if self._session is session:
            self._session = None
        if self._idle is not None and self._idle.running and not self.closing.is_set():
            await self._idle.check()

    # -- Lifecycle --

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Unregister the agent, power down and drop the bus connection.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        await self.agent.unregister()
        try:
            await self.power_down(force=True)
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to power off adapter at shutdown: %s", e)
        if self._idle is not None:
            await self._idle.stop()

        self.closing.set()
        if self._tasks:
            # Session cleanup makes a few bounded calls before exiting
            await asyncio.wait(list(self._tasks), timeout=self.config.timeout * 4)

        self.gateway.close()
        logger.info("Bluetooth backend closed")
