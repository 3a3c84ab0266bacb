"""Shared test fixtures.

Puts ``src/`` on the import path so the tests run against the working
tree without installing the package.  The D-Bus side is replaced by
``fakes.FakeBus``; tests build it inside their own event loop.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))


@pytest.fixture
def bt_config():
    """Bluetooth settings with sub-second timeouts."""
    from odio_api.config import BluetoothConfig

    return BluetoothConfig(
        enabled=True,
        adapter="hci0",
        timeout=0.2,
        pairing_timeout=0.5,
        idle_timeout=0.0,
    )
