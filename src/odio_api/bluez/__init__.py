"""BlueZ D-Bus wrappers used by the bluetooth backend."""

from .adapter import BluezAdapter
from .agent import AgentInterface, PairingAgent
from .errors import BluetoothUnsupportedError, BusTimeoutError, SignalError
from .gateway import BusGateway
from .listener import MatchRule, PropertiesChanged, SignalListener

__all__ = [
    "AgentInterface",
    "BluetoothUnsupportedError",
    "BluezAdapter",
    "BusGateway",
    "BusTimeoutError",
    "MatchRule",
    "PairingAgent",
    "PropertiesChanged",
    "SignalError",
    "SignalListener",
]
