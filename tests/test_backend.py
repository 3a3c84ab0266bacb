"""Tests for the bluetooth backend: power, pairing sessions and idle power-down."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from dbus_next.errors import DBusError

from fakes import FakeBus, wait_until
from odio_api.backend import BluetoothBackend
from odio_api.bluez.errors import BusTimeoutError
from odio_api.config import BluetoothConfig
from odio_api.status import AdapterStatus

ADDR = "AA:BB:CC:DD:EE:FF"


def _backend(bus, config, **overrides):
    return BluetoothBackend(bus, dataclasses.replace(config, **overrides))


class TestCreate:
    def test_disabled_returns_none(self):
        assert asyncio.run(BluetoothBackend.create(BluetoothConfig(enabled=False))) is None

    def test_missing_config_returns_none(self):
        assert asyncio.run(BluetoothBackend.create(None)) is None


class TestStatus:
    def test_zero_value_before_any_operation(self, bt_config):
        async def scenario():
            backend = _backend(FakeBus(), bt_config)
            return backend.get_status()

        status = asyncio.run(scenario())
        assert status == AdapterStatus()
        assert status.known_devices == []

    def test_status_changes_are_reported(self, bt_config):
        seen = []

        async def scenario():
            bus = FakeBus()
            backend = BluetoothBackend(bus, bt_config, on_status_change=seen.append)
            await backend.power_up()
            await backend.close()

        asyncio.run(scenario())
        assert seen[0].powered is True
        assert seen[-1].powered is False


class TestPower:
    def test_power_up_from_off(self, bt_config):
        """One power-on call, one discoverable=false and one pairable=false call."""
        async def scenario():
            bus = FakeBus(powered=False)
            backend = _backend(bus, bt_config)
            await backend.power_up()
            status = backend.get_status()
            await backend.close()
            return bus, status

        bus, status = asyncio.run(scenario())
        assert bus.property_writes("Powered")[0] is True
        assert bus.property_writes("Powered").count(True) == 1
        assert bus.property_writes("Discoverable") == [False]
        assert bus.property_writes("Pairable") == [False]
        assert status.powered is True
        assert status.discoverable is False
        assert status.pairable is False

    def test_power_up_when_already_on(self, bt_config):
        async def scenario():
            bus = FakeBus(powered=True)
            backend = _backend(bus, bt_config)
            await backend.power_up()
            return bus, backend.get_status()

        bus, status = asyncio.run(scenario())
        assert bus.property_writes("Powered") == []
        assert status.powered is True

    def test_power_up_lists_trusted_devices(self, bt_config):
        async def scenario():
            bus = FakeBus()
            bus.add_device(ADDR, trusted=True, name="Speaker")
            bus.add_device("11:22:33:44:55:66", trusted=False)
            backend = _backend(bus, bt_config)
            await backend.power_up()
            return backend.get_status()

        status = asyncio.run(scenario())
        assert [d.address for d in status.known_devices] == [ADDR]
        assert status.known_devices[0].name == "Speaker"

    def test_power_down_is_idempotent(self, bt_config):
        """A second power down changes nothing and makes no calls."""
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config)
            await backend.power_up()
            await backend.power_down()
            first = backend.get_status()
            calls = len(bus.calls)
            await backend.power_down()
            return first, backend.get_status(), calls, len(bus.calls)

        first, second, calls_before, calls_after = asyncio.run(scenario())
        assert first == second
        assert first.powered is False
        assert calls_before == calls_after

    def test_power_up_error_propagates(self, bt_config):
        async def scenario():
            bus = FakeBus()
            bus.errors["Set:Powered"] = "org.bluez.Error.Failed"
            backend = _backend(bus, bt_config)
            await backend.power_up()

        with pytest.raises(DBusError):
            asyncio.run(scenario())

    def test_power_up_timeout_propagates(self, bt_config):
        async def scenario():
            bus = FakeBus()
            bus.hang.add("Set:Powered")
            backend = _backend(bus, bt_config, timeout=0.05)
            await backend.power_up()

        with pytest.raises(BusTimeoutError):
            asyncio.run(scenario())


class TestPairing:
    def test_concurrent_pairing_is_exclusive(self, bt_config):
        """Of two simultaneous calls only one opens a session."""
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, pairing_timeout=5)
            started = datetime.now(timezone.utc)
            await asyncio.gather(backend.new_pairing(), backend.new_pairing())
            status = backend.get_status()
            calls = list(bus.calls)
            await backend.close()
            return started, status, calls

        started, status, calls = asyncio.run(scenario())
        assert status.pairing_active is True
        assert status.discoverable is True
        assert status.pairable is True
        expected = started + timedelta(seconds=5)
        assert abs((status.pairing_until - expected).total_seconds()) < 1
        assert sum(1 for c in calls if c[1] == "RegisterAgent") == 1
        assert sum(1 for c in calls if c[1] == "Set" and c[2][1] == "Powered") == 1

    def test_visibility_timeouts_armed(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, pairing_timeout=5)
            await backend.new_pairing()
            await backend.close()
            return bus

        bus = asyncio.run(scenario())
        assert bus.property_writes("DiscoverableTimeout") == [5]
        assert bus.property_writes("PairableTimeout") == [5]

    def test_short_pairing_timeout_rounds_up(self, bt_config):
        """Sub-second windows still arm BlueZ's own timeout (0 would mean never)."""
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, pairing_timeout=0.5)
            await backend.new_pairing()
            await backend.close()
            return bus

        bus = asyncio.run(scenario())
        assert bus.property_writes("DiscoverableTimeout") == [1]
        assert bus.property_writes("PairableTimeout") == [1]

    def test_pairing_window_expires(self, bt_config):
        """Without a paired device the flags reset after the timeout."""
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, pairing_timeout=0.2)
            loop = asyncio.get_running_loop()
            started = loop.time()
            await backend.new_pairing()
            assert backend.pairing_active
            await wait_until(lambda: not backend.pairing_active)
            elapsed = loop.time() - started
            status = backend.get_status()

            await backend.new_pairing()
            again = backend.pairing_active
            await backend.close()
            return bus, status, elapsed, again

        bus, status, elapsed, again = asyncio.run(scenario())
        assert elapsed >= 0.2
        assert status.pairing_active is False
        assert status.discoverable is False
        assert status.pairable is False
        assert status.pairing_until is None
        assert status.powered is True
        assert bus.property_writes("Discoverable")[:3] == [False, True, False]
        assert again is True

    def test_paired_device_ends_session_early(self, bt_config):
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR)
            backend = _backend(bus, bt_config, pairing_timeout=5)
            loop = asyncio.get_running_loop()
            started = loop.time()
            await backend.new_pairing()
            await wait_until(lambda: backend.session is not None and backend.session.listener.running)
            await asyncio.sleep(0.05)
            bus.emit_properties_changed(path, {"Paired": True})
            await wait_until(lambda: not backend.pairing_active)
            elapsed = loop.time() - started
            status = backend.get_status()
            await backend.close()
            return bus, path, status, elapsed

        bus, path, status, elapsed = asyncio.run(scenario())
        assert elapsed < 5
        assert bus.devices[path]["Trusted"] is True
        assert [d.address for d in status.known_devices] == [ADDR]
        assert status.pairing_active is False
        assert status.discoverable is False
        assert status.pairable is False

    def test_paired_false_keeps_session_open(self, bt_config):
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR)
            backend = _backend(bus, bt_config, pairing_timeout=5)
            await backend.new_pairing()
            await wait_until(lambda: backend.session is not None and backend.session.listener.running)
            bus.emit_properties_changed(path, {"Paired": False})
            bus.emit_properties_changed(path, {"Connected": True})
            await asyncio.sleep(0.1)
            active = backend.pairing_active
            await backend.close()
            return active

        assert asyncio.run(scenario()) is True

    def test_failure_before_hand_off_releases_lock(self, bt_config):
        async def scenario():
            bus = FakeBus()
            bus.errors["Set:Discoverable"] = "org.bluez.Error.Busy"
            backend = _backend(bus, bt_config)
            with pytest.raises(DBusError):
                await backend.new_pairing()
            return backend

        backend = asyncio.run(scenario())
        assert not backend.pairing_active
        assert backend.get_status().pairing_active is False

    def test_agent_registration_failure_releases_lock(self, bt_config):
        async def scenario():
            bus = FakeBus()
            bus.errors["RegisterAgent"] = "org.bluez.Error.InvalidArguments"
            backend = _backend(bus, bt_config)
            with pytest.raises(DBusError):
                await backend.new_pairing()
            return bus, backend

        bus, backend = asyncio.run(scenario())
        assert not backend.pairing_active
        assert bus.property_writes("Powered") == []

    def test_power_down_ends_session(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, pairing_timeout=5)
            await backend.new_pairing()
            await wait_until(lambda: backend.session is not None and backend.session.listener.running)
            await backend.power_down()
            await wait_until(lambda: not backend.pairing_active)
            status = backend.get_status()
            await backend.close()
            return status

        status = asyncio.run(scenario())
        assert status.powered is False
        assert status.pairing_active is False

    def test_trust_device_soon(self, bt_config):
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR)
            backend = _backend(bus, bt_config)
            backend.trust_device_soon(path)
            await wait_until(lambda: backend.get_status().known_devices)
            return bus, path

        bus, path = asyncio.run(scenario())
        assert bus.devices[path]["Trusted"] is True


class TestIdleMonitor:
    def test_idle_timeout_powers_down(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, idle_timeout=0.1)
            await backend.power_up()
            assert backend.idle_monitor.timer_active
            await wait_until(lambda: bus.property_writes("Powered") == [True, False])
            await wait_until(lambda: not backend.get_status().powered)
            running = backend.idle_monitor.running
            await backend.close()
            return running

        assert asyncio.run(scenario()) is False

    def test_connect_before_deadline_cancels_timer(self, bt_config):
        """A device connecting just before expiry prevents the power down."""
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR, trusted=True)
            backend = _backend(bus, bt_config, idle_timeout=0.5)
            await backend.power_up()
            assert backend.idle_monitor.timer_active
            await asyncio.sleep(0.3)
            bus.emit_properties_changed(path, {"Connected": True})
            await wait_until(lambda: not backend.idle_monitor.timer_active)
            await asyncio.sleep(0.5)
            writes = bus.property_writes("Powered")
            timer_active = backend.idle_monitor.timer_active
            await backend.close()
            return writes, timer_active

        writes, timer_active = asyncio.run(scenario())
        assert writes == [True]
        assert timer_active is False

    def test_disconnect_rearms_timer(self, bt_config):
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR, connected=True, trusted=True)
            backend = _backend(bus, bt_config, idle_timeout=5)
            await backend.power_up()
            armed_while_connected = backend.idle_monitor.timer_active
            bus.emit_properties_changed(path, {"Connected": False})
            await wait_until(lambda: backend.idle_monitor.timer_active)
            await backend.close()
            return armed_while_connected

        assert asyncio.run(scenario()) is False

    def test_timer_held_off_during_pairing(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, idle_timeout=5, pairing_timeout=0.2)
            await backend.new_pairing()
            during = backend.idle_monitor.timer_active
            await wait_until(lambda: not backend.pairing_active)
            await wait_until(lambda: backend.idle_monitor.timer_active)
            await backend.close()
            return during

        assert asyncio.run(scenario()) is False

    def test_power_down_during_check_leaves_no_timer(self, bt_config):
        """A check still in flight when the adapter goes down must not arm a timer."""
        async def scenario():
            bus = FakeBus()
            path = bus.add_device(ADDR, connected=True, trusted=True)
            backend = _backend(bus, bt_config, idle_timeout=0.5)
            await backend.power_up()
            assert not backend.idle_monitor.timer_active

            # The device scan started by the disconnect stalls until the call timeout
            bus.hang.add("GetManagedObjects")
            bus.emit_properties_changed(path, {"Connected": False})
            await asyncio.sleep(0.05)
            await backend.power_down()
            timer_after_power_down = backend.idle_monitor.timer_active

            bus.hang.discard("GetManagedObjects")
            await asyncio.sleep(0.3)
            await backend.power_up()
            await asyncio.sleep(0.3)
            powered = backend.get_status().powered
            await backend.close()
            return timer_after_power_down, powered

        timer_after_power_down, powered = asyncio.run(scenario())
        assert timer_after_power_down is False
        assert powered is True

    def test_no_timer_when_adapter_off(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, idle_timeout=5)
            await backend.idle_monitor.check()
            return backend.idle_monitor.timer_active

        assert asyncio.run(scenario()) is False

    def test_disabled_when_timeout_zero(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, idle_timeout=0)
            await backend.power_up()
            return bus, backend

        bus, backend = asyncio.run(scenario())
        assert backend.idle_monitor is None
        assert bus.calls_to("AddMatch") == []


class TestClose:
    def test_close_is_idempotent(self, bt_config):
        async def scenario():
            bus = FakeBus()
            backend = _backend(bus, bt_config, idle_timeout=5)
            await backend.new_pairing()
            await backend.close()
            await backend.close()
            return bus, backend

        bus, backend = asyncio.run(scenario())
        assert bus.connected is False
        assert len(bus.calls_to("UnregisterAgent")) == 1
        assert bus.match_rules == []
        assert backend.get_status().powered is False
        assert not backend.pairing_active
