"""Idle power-down of the Bluetooth adapter.

Watches Device1 ``Connected`` changes on our adapter.  When no device is
connected, a single timer task is armed; when it expires the adapter is
powered down.  Any device connecting before that cancels the timer.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from dbus_next.errors import DBusError

from .bluez.constants import DEVICE_INTERFACE, PROP_CONNECTED
from .bluez.errors import BusTimeoutError
from .bluez.listener import MatchRule, PropertiesChanged, SignalListener

if TYPE_CHECKING:
    from .backend import BluetoothBackend

logger = logging.getLogger(__name__)


class IdleMonitor:
    """Powers the adapter down after a period with no connected devices."""

    def __init__(self, backend: "BluetoothBackend", timeout: float):
        self._backend = backend
        self._timeout = timeout
        self._listener: SignalListener | None = None
        self._timer: asyncio.Task | None = None
        self._timer_lock = asyncio.Lock()
        # Bumped on every connect so a check that raced with one gives up
        self._connect_seq = 0

    @property
    def running(self) -> bool:
        return self._listener is not None and self._listener.running

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    async def start(self) -> None:
        """Start watching connections, then arm the timer if nothing is connected."""
        if self.running:
            return
        listener = SignalListener(
            self._backend.gateway,
            MatchRule(path_namespace=self._backend.adapter.adapter_path, arg0=DEVICE_INTERFACE),
            self._on_connection_change,
            parent=self._backend.closing,
            name="idle-listener",
        )
        try:
            await listener.start()
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to start idle monitor: %s", e)
            return
        self._listener = listener
        logger.debug("Idle monitor started (timeout=%ss)", self._timeout)
        await self.check()

    async def stop(self) -> None:
        """Stop watching and drop any pending timer."""
        await self.cancel_timer()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.stop()
            await listener.wait()
            # A check() still running in the callback may have armed a timer
            await self.cancel_timer()
            logger.debug("Idle monitor stopped")

    async def _on_connection_change(self, signal: PropertiesChanged) -> bool:
        if signal.interface != DEVICE_INTERFACE:
            return False
        connected = signal.get_bool(PROP_CONNECTED)
        if connected is None:
            logger.debug("Signal from %s ignored: no Connected change", signal.path)
            return False

        logger.debug("Device %s Connected=%s", signal.path, connected)
        if connected:
            self._connect_seq += 1
            await self.cancel_timer()
        else:
            await self.check()
        return False  # runs for as long as the adapter is on

    async def cancel_timer(self) -> None:
        async with self._timer_lock:
            if self._timer is None:
                return
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
            self._timer = None
        logger.info("Idle timer cancelled")

    async def check(self) -> None:
        """Arm the idle timer unless a device is connected or one is running."""
        if not self._can_arm():
            return
        if self._backend.get_status().pairing_active:
            logger.debug("Pairing in progress, not arming idle timer")
            return

        seq = self._connect_seq
        try:
            connected = await self._backend.adapter.has_connected_devices()
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to check connected devices: %s", e)
            connected = False
        if connected:
            logger.debug("Still has connected devices, skipping idle timer")
            return
        if seq != self._connect_seq:
            logger.debug("Device connected while checking, skipping idle timer")
            return

        async with self._timer_lock:
            if not self._can_arm():
                return
            if self._timer is not None:
                logger.debug("Idle timer already running, skipping")
                return
            self._timer = asyncio.create_task(self._expire(), name="idle-timer")
        logger.info("Idle timer started (%ss)", self._timeout)

    def _can_arm(self) -> bool:
        if self._listener is None:
            logger.debug("Idle monitor stopped, not arming idle timer")
            return False
        if not self._backend.get_status().powered:
            logger.debug("Adapter is off, not arming idle timer")
            return False
        return True

    async def _expire(self) -> None:
        await asyncio.sleep(self._timeout)

        async with self._timer_lock:
            if self._timer is not asyncio.current_task():
                return
            self._timer = None

        if self._backend.get_status().pairing_active:
            logger.info("Idle timeout reached during pairing, keeping adapter on")
            return

        logger.info("Idle timeout reached after %ss, powering down", self._timeout)
        try:
            await self._backend.power_down()
        except (DBusError, BusTimeoutError) as e:
            logger.warning("Failed to power down after idle timeout: %s", e)
