"""BlueZ Agent1 D-Bus implementation for headless pairing."""

import logging
from typing import TYPE_CHECKING

from dbus_next.errors import DBusError
from dbus_next.service import ServiceInterface, method

from .constants import (
    AGENT_CAPABILITY,
    AGENT_INTERFACE,
    AGENT_MANAGER_INTERFACE,
    AGENT_PATH,
    BLUEZ_PATH,
    DEFAULT_PASSKEY,
    DEFAULT_PIN_CODE,
    ERROR_ALREADY_EXISTS,
)
from .errors import BusTimeoutError, is_dbus_error
from .gateway import BusGateway

if TYPE_CHECKING:
    from ..backend import BluetoothBackend

logger = logging.getLogger(__name__)


class AgentInterface(ServiceInterface):
    """D-Bus implementation of org.bluez.Agent1.

    Uses NoInputNoOutput capability for Just Works pairing: every request
    is accepted straight away and the device is marked trusted so it can
    reconnect without pairing again.  Holds no state besides the backend
    it reports to.
    """

    def __init__(self, backend: "BluetoothBackend"):
        super().__init__(AGENT_INTERFACE)
        self._backend = backend

    def _accept(self, device: str) -> None:
        self._backend.trust_device_soon(device)

    @method()
    def Release(self) -> None:
        """Called when BlueZ unregisters this agent."""
        logger.debug("Agent released by BlueZ")

    @method()
    def RequestPinCode(self, device: "o") -> "s":
        logger.info("PIN code requested by %s, answering with default", device)
        self._accept(device)
        return DEFAULT_PIN_CODE

    @method()
    def DisplayPinCode(self, device: "o", pincode: "s") -> None:
        logger.info("PIN code for %s: %s", device, pincode)

    @method()
    def RequestPasskey(self, device: "o") -> "u":
        logger.info("Passkey requested by %s, answering with default", device)
        self._accept(device)
        return DEFAULT_PASSKEY

    @method()
    def DisplayPasskey(self, device: "o", passkey: "u", entered: "q") -> None:
        logger.debug("Passkey for %s: %06d (entered: %d)", device, passkey, entered)

    @method()
    def RequestConfirmation(self, device: "o", passkey: "u") -> None:
        """Auto-confirm numeric comparison."""
        logger.info("Auto-confirming passkey %06d for %s", passkey, device)
        self._accept(device)

    @method()
    def RequestAuthorization(self, device: "o") -> None:
        """Auto-authorize incoming pairing requests."""
        logger.info("Auto-authorizing pairing for %s", device)
        self._accept(device)

    @method()
    def AuthorizeService(self, device: "o", uuid: "s") -> None:
        """Auto-authorize service connections."""
        logger.info("Auto-authorizing service %s for %s", uuid, device)
        self._accept(device)

    @method()
    def Cancel(self) -> None:
        """Pairing request was cancelled."""
        logger.debug("Agent: pairing cancelled")


class PairingAgent:
    """Manages the lifecycle of the BlueZ pairing agent.

    The agent object is exported once and registered as the default agent.
    Registering again is a no-op, and BlueZ answering AlreadyExists counts
    as success.
    """

    def __init__(self, gateway: BusGateway, backend: "BluetoothBackend"):
        self._gateway = gateway
        self._agent = AgentInterface(backend)
        self._exported = False
        self._registered = False

    @property
    def registered(self) -> bool:
        return self._registered

    async def register(self) -> None:
        """Export the agent interface and register it with BlueZ.

        Raises DBusError or BusTimeoutError on any failure other than
        AlreadyExists.
        """
        if self._registered:
            return
        if not self._exported:
            self._gateway.bus.export(AGENT_PATH, self._agent)
            self._exported = True

        try:
            await self._gateway.call(
                BLUEZ_PATH, AGENT_MANAGER_INTERFACE, "RegisterAgent", "os",
                [AGENT_PATH, AGENT_CAPABILITY],
            )
        except DBusError as e:
            if not is_dbus_error(e, ERROR_ALREADY_EXISTS):
                logger.warning("Failed to register agent: %s", e)
                raise
            logger.info("Pairing agent already registered")

        await self._gateway.call(
            BLUEZ_PATH, AGENT_MANAGER_INTERFACE, "RequestDefaultAgent", "o", [AGENT_PATH]
        )
        self._registered = True
        logger.info(
            "Pairing agent registered at %s (capability: %s)",
            AGENT_PATH,
            AGENT_CAPABILITY,
        )

    async def unregister(self) -> None:
        """Unregister the agent from BlueZ and unexport it."""
        if self._registered:
            try:
                await self._gateway.call(
                    BLUEZ_PATH, AGENT_MANAGER_INTERFACE, "UnregisterAgent", "o", [AGENT_PATH]
                )
            except (DBusError, BusTimeoutError) as e:
                logger.debug("Agent unregister failed (may already be gone): %s", e)
            self._registered = False
            logger.info("Pairing agent unregistered")
        if self._exported:
            self._gateway.bus.unexport(AGENT_PATH, self._agent)
            self._exported = False
