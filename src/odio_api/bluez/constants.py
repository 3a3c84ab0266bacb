"""BlueZ and D-Bus names used by the bluetooth backend."""

# BlueZ D-Bus service and interface names
BLUEZ_SERVICE = "org.bluez"
BLUEZ_PATH = "/org/bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
AGENT_INTERFACE = "org.bluez.Agent1"
AGENT_MANAGER_INTERFACE = "org.bluez.AgentManager1"

# Message bus daemon and standard interfaces
DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_INTERFACE = "org.freedesktop.DBus"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_CHANGED = "PropertiesChanged"

# Default adapter
DEFAULT_ADAPTER = "hci0"
DEFAULT_ADAPTER_PATH = f"{BLUEZ_PATH}/{DEFAULT_ADAPTER}"

# Agent capability for headless pairing (Just Works)
AGENT_CAPABILITY = "NoInputNoOutput"
AGENT_PATH = "/org/odio/agent"

# Answers given by the agent when BlueZ insists on a value
DEFAULT_PIN_CODE = "0000"
DEFAULT_PASSKEY = 0

# BlueZ error names
ERROR_ALREADY_EXISTS = "org.bluez.Error.AlreadyExists"
ERROR_DOES_NOT_EXIST = "org.bluez.Error.DoesNotExist"

# Adapter / device property names
PROP_POWERED = "Powered"
PROP_DISCOVERABLE = "Discoverable"
PROP_PAIRABLE = "Pairable"
PROP_DISCOVERABLE_TIMEOUT = "DiscoverableTimeout"
PROP_PAIRABLE_TIMEOUT = "PairableTimeout"
PROP_ADAPTER = "Adapter"
PROP_ADDRESS = "Address"
PROP_NAME = "Name"
PROP_ALIAS = "Alias"
PROP_CONNECTED = "Connected"
PROP_PAIRED = "Paired"
PROP_TRUSTED = "Trusted"

# D-Bus signatures of the properties we write
PROPERTY_SIGNATURES = {
    PROP_POWERED: "b",
    PROP_DISCOVERABLE: "b",
    PROP_PAIRABLE: "b",
    PROP_TRUSTED: "b",
    PROP_DISCOVERABLE_TIMEOUT: "u",
    PROP_PAIRABLE_TIMEOUT: "u",
}


def adapter_path(adapter: str) -> str:
    """Return the BlueZ object path for an adapter name like 'hci0'."""
    if adapter.startswith("/"):
        return adapter
    return f"{BLUEZ_PATH}/{adapter}"
