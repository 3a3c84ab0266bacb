"""Error types raised by the BlueZ layer."""

from dbus_next.errors import DBusError


class BusTimeoutError(TimeoutError):
    """Raised when a D-Bus call gets no reply within the call timeout."""

    def __init__(self, member: str, timeout: float):
        super().__init__(f"D-Bus call {member} timed out after {timeout:g}s")
        self.member = member
        self.timeout = timeout


class SignalError(ValueError):
    """Raised when a D-Bus signal body does not have the expected shape."""


class BluetoothUnsupportedError(Exception):
    """Raised when no Bluetooth adapter is exposed by BlueZ."""


def is_dbus_error(exc: BaseException, name: str) -> bool:
    """True when *exc* is a DBusError carrying the given error name."""
    return isinstance(exc, DBusError) and exc.type == name
