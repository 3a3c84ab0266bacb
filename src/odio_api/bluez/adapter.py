"""BlueZ Adapter1 D-Bus wrapper: power, visibility and device enumeration."""

import logging

from .constants import (
    ADAPTER_INTERFACE,
    DEFAULT_ADAPTER_PATH,
    DEVICE_INTERFACE,
    PROP_ADAPTER,
    PROP_CONNECTED,
    PROP_DISCOVERABLE,
    PROP_DISCOVERABLE_TIMEOUT,
    PROP_PAIRABLE,
    PROP_PAIRABLE_TIMEOUT,
    PROP_POWERED,
    PROP_TRUSTED,
)
from .device import known_device_from_properties, prop_bool, prop_value
from .errors import BluetoothUnsupportedError
from .gateway import BusGateway
from ..status import KnownDevice

logger = logging.getLogger(__name__)


class BluezAdapter:
    """Wraps org.bluez.Adapter1 on one adapter path.

    All calls go through the gateway, so each one either completes, fails
    with DBusError, or fails with BusTimeoutError after the call timeout.
    """

    def __init__(self, gateway: BusGateway, adapter_path: str = DEFAULT_ADAPTER_PATH):
        self._gateway = gateway
        self._adapter_path = adapter_path

    @property
    def adapter_path(self) -> str:
        return self._adapter_path

    async def check_support(self) -> None:
        """Raise BluetoothUnsupportedError unless BlueZ exposes our adapter."""
        objects = await self._gateway.get_managed_objects()
        adapters = sorted(
            path for path, interfaces in objects.items()
            if ADAPTER_INTERFACE in interfaces
        )
        if self._adapter_path in adapters:
            logger.info("Adapter found at %s", self._adapter_path)
            return
        if adapters:
            logger.warning(
                "Adapter %s not found (available: %s)",
                self._adapter_path, ", ".join(adapters),
            )
        raise BluetoothUnsupportedError(f"no Bluetooth adapter at {self._adapter_path}")

    async def _get(self, name: str):
        return await self._gateway.get_property(self._adapter_path, ADAPTER_INTERFACE, name)

    async def _set(self, name: str, value) -> None:
        await self._gateway.set_property(self._adapter_path, ADAPTER_INTERFACE, name, value)

    async def is_powered(self) -> bool:
        return (await self._get(PROP_POWERED)) is True

    async def set_powered(self, state: bool) -> None:
        await self._set(PROP_POWERED, state)
        logger.debug("Adapter %s Powered=%s", self._adapter_path, state)

    async def set_discoverable(self, state: bool) -> None:
        await self._set(PROP_DISCOVERABLE, state)

    async def set_pairable(self, state: bool) -> None:
        await self._set(PROP_PAIRABLE, state)

    async def set_discoverable_and_pairable(self, state: bool) -> None:
        await self.set_discoverable(state)
        await self.set_pairable(state)
        logger.debug("Adapter %s Discoverable=Pairable=%s", self._adapter_path, state)

    async def set_visibility_timeouts(self, seconds: int) -> None:
        """Arm BlueZ's own DiscoverableTimeout and PairableTimeout."""
        await self._set(PROP_DISCOVERABLE_TIMEOUT, seconds)
        await self._set(PROP_PAIRABLE_TIMEOUT, seconds)

    async def get_devices(self) -> dict[str, dict]:
        """Return Device1 property dicts for devices on this adapter."""
        objects = await self._gateway.get_managed_objects()
        devices = {}
        prefix = self._adapter_path + "/"
        for path, interfaces in objects.items():
            props = interfaces.get(DEVICE_INTERFACE)
            if props is None:
                continue
            owner = prop_value(props, PROP_ADAPTER)
            if owner is not None:
                if owner != self._adapter_path:
                    continue
            elif not path.startswith(prefix):
                continue
            devices[path] = props
        return devices

    async def list_known_devices(self) -> list[KnownDevice]:
        """Trusted devices on this adapter, ordered by object path."""
        devices = await self.get_devices()
        return [
            known_device_from_properties(path, props)
            for path, props in sorted(devices.items())
            if prop_bool(props, PROP_TRUSTED)
        ]

    async def has_connected_devices(self) -> bool:
        devices = await self.get_devices()
        return any(prop_bool(props, PROP_CONNECTED) for props in devices.values())
