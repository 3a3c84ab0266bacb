"""Exclusive, time-bounded pairing sessions.

``BluetoothBackend.new_pairing()`` takes the pairing lock, puts the
adapter in pairing mode and hands the lock to a ``PairingSession`` running
as a background task.  The session watches for a device reporting
``Paired=true`` until its deadline, then resets the adapter and releases
the lock, on every exit path, exactly once.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from dbus_next.errors import DBusError

from .bluez.constants import DEVICE_INTERFACE, PROP_PAIRED
from .bluez.errors import BusTimeoutError
from .bluez.listener import MatchRule, PropertiesChanged, SignalListener
from .status import AdapterStatus

if TYPE_CHECKING:
    from .backend import BluetoothBackend

logger = logging.getLogger(__name__)


def _pairing_finished(s: AdapterStatus) -> None:
    s.discoverable = False
    s.pairable = False
    s.pairing_active = False
    s.pairing_until = None


class PairingSession:
    """Owns the pairing lock from ``run()`` until cleanup."""

    def __init__(self, backend: "BluetoothBackend", lock: asyncio.Lock, timeout: float):
        self._backend = backend
        self._lock = lock
        self._timeout = timeout
        self._released = False
        self.paired_device: str | None = None
        self._listener = SignalListener(
            backend.gateway,
            MatchRule(path_namespace=backend.adapter.adapter_path, arg0=DEVICE_INTERFACE),
            self._on_device_paired,
            parent=backend.closing,
            timeout=timeout,
            name="pairing-listener",
        )

    @property
    def listener(self) -> SignalListener:
        return self._listener

    def stop(self) -> None:
        """End the session early; cleanup still runs in ``run()``."""
        self._listener.stop()

    async def run(self) -> None:
        logger.debug("Pairing session started (timeout=%ss)", self._timeout)
        try:
            try:
                await self._listener.start()
            except (DBusError, BusTimeoutError) as e:
                logger.warning("Failed to start pairing listener: %s", e)
                return
            await self._listener.wait()
            if self._listener.completed:
                logger.info("Pairing completed with %s", self.paired_device)
            else:
                logger.info("Pairing window closed without a new device")
        finally:
            await self._cleanup()

    async def _on_device_paired(self, signal: PropertiesChanged) -> bool:
        if signal.interface != DEVICE_INTERFACE:
            return False
        paired = signal.get_bool(PROP_PAIRED)
        if paired is None:
            logger.debug("Pairing signal from %s ignored: no Paired change", signal.path)
            return False
        if not paired:
            logger.debug("Pairing signal from %s ignored: Paired=false", signal.path)
            return False

        logger.info("Device %s paired successfully", signal.path)
        if not await self._backend.trust_device(signal.path):
            logger.warning("Failed to trust device %s", signal.path)
            return False
        self.paired_device = signal.path
        return True

    async def _cleanup(self) -> None:
        logger.info("Resetting adapter state after pairing")
        try:
            if self._backend.get_status().powered:
                try:
                    await self._backend.adapter.set_discoverable_and_pairable(False)
                except (DBusError, BusTimeoutError) as e:
                    logger.warning("Failed to reset adapter state after pairing: %s", e)
            self._backend.update_status(_pairing_finished)
        finally:
            self._release()
        await self._backend.on_pairing_finished(self)

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._lock.release()
        logger.debug("Pairing cleanup complete, lock released")
