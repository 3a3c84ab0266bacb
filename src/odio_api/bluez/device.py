"""BlueZ Device1 helpers: object paths, property parsing and trust."""

import logging

from dbus_next import Variant

from ..status import KnownDevice
from .constants import (
    DEVICE_INTERFACE,
    PROP_ADDRESS,
    PROP_ALIAS,
    PROP_CONNECTED,
    PROP_NAME,
    PROP_PAIRED,
    PROP_TRUSTED,
)
from .gateway import BusGateway

logger = logging.getLogger(__name__)


def path_to_address(path: str) -> str:
    """Convert /org/bluez/hci0/dev_AA_BB_... back to AA:BB:..., or ''."""
    leaf = path.rsplit("/", 1)[-1]
    if not leaf.startswith("dev_"):
        return ""
    return leaf[4:].replace("_", ":")


def prop_value(props: dict, key: str, default=None):
    """Read one entry of a D-Bus property dict, unwrapping Variants."""
    value = props.get(key, default)
    if isinstance(value, Variant):
        return value.value
    return value


def prop_bool(props: dict, key: str) -> bool:
    value = prop_value(props, key)
    return value if isinstance(value, bool) else False


def prop_str(props: dict, key: str) -> str:
    value = prop_value(props, key)
    return value if isinstance(value, str) else ""


def known_device_from_properties(path: str, props: dict) -> KnownDevice:
    """Build a KnownDevice from a Device1 property dict."""
    address = prop_str(props, PROP_ADDRESS) or path_to_address(path)
    name = prop_str(props, PROP_NAME) or prop_str(props, PROP_ALIAS) or address
    return KnownDevice(
        path=path,
        address=address,
        name=name,
        connected=prop_bool(props, PROP_CONNECTED),
        trusted=prop_bool(props, PROP_TRUSTED),
        paired=prop_bool(props, PROP_PAIRED),
    )


class BluezDevice:
    """Wraps org.bluez.Device1 on one object path."""

    def __init__(self, gateway: BusGateway, path: str):
        self._gateway = gateway
        self._path = path

    async def set_trusted(self, trusted: bool = True) -> None:
        """Set the device as trusted (allows BlueZ auto-reconnect)."""
        await self._gateway.set_property(self._path, DEVICE_INTERFACE, PROP_TRUSTED, trusted)
        logger.info("Device %s (%s) trusted=%s", self.address or "?", self._path, trusted)

    @property
    def address(self) -> str:
        return path_to_address(self._path)
