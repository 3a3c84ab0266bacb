"""Configuration loader for odio-api.

Reads a JSON file from the first location that exists:
``$ODIO_API_CONFIG``, ``/etc/odio-api/config.json`` or
``~/.config/odio-api/config.json``.  A missing file means defaults.
Configuration is read once at startup and never reloaded.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

APP_NAME = "odio-api"
ENV_CONFIG_PATH = "ODIO_API_CONFIG"


def _config_paths() -> list[Path]:
    paths = []
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        paths.append(Path(env_path))
    paths.append(Path("/etc") / APP_NAME / "config.json")
    paths.append(Path.home() / ".config" / APP_NAME / "config.json")
    return paths


def _duration(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"bluetooth.{key} must be a number of seconds, got {value!r}")
    if value < 0:
        raise ValueError(f"bluetooth.{key} must not be negative, got {value}")
    return float(value)


@dataclass
class BluetoothConfig:
    """Settings for the bluetooth backend."""

    enabled: bool = False
    adapter: str = "hci0"
    timeout: float = 5.0  # per D-Bus call
    pairing_timeout: float = 60.0
    idle_timeout: float = 0.0  # 0 disables idle power-down

    @classmethod
    def from_dict(cls, data: dict) -> "BluetoothConfig":
        defaults = cls()
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            adapter=str(data.get("adapter", defaults.adapter)),
            timeout=_duration(data, "timeout", defaults.timeout),
            pairing_timeout=_duration(data, "pairing_timeout", defaults.pairing_timeout),
            idle_timeout=_duration(data, "idle_timeout", defaults.idle_timeout),
        )


@dataclass
class AppConfig:
    """Application configuration."""

    log_level: str = "info"
    host: str = "0.0.0.0"
    port: int = 8018
    bluetooth: BluetoothConfig = field(default_factory=BluetoothConfig)
    source: str | None = None  # file the settings came from

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        defaults = cls()
        port = data.get("port", defaults.port)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 65535:
            raise ValueError(f"invalid port: {port!r}")
        bt = data.get("bluetooth") or {}
        if not isinstance(bt, dict):
            raise ValueError("bluetooth must be an object")
        return cls(
            log_level=str(data.get("log_level", defaults.log_level)),
            host=str(data.get("host", defaults.host)),
            port=port,
            bluetooth=BluetoothConfig.from_dict(bt),
        )

    @classmethod
    def load(cls, path: str | Path | None = None) -> "AppConfig":
        """Load configuration from *path* or the first existing default path.

        Unreadable JSON falls back to defaults; invalid values raise
        ValueError.
        """
        candidates = [Path(path)] if path else _config_paths()
        for candidate in candidates:
            if not candidate.exists():
                continue
            try:
                data = json.loads(candidate.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Failed to parse %s: %s, using defaults", candidate, e)
                return cls()
            if not isinstance(data, dict):
                logger.error("Ignoring %s: top-level value is not an object", candidate)
                return cls()
            config = cls.from_dict(data)
            config.source = str(candidate)
            logger.info("Loaded settings from %s", candidate)
            return config
        return cls()
