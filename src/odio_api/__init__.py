"""odio-api: local control daemon for Linux desktop/audio subsystems."""

__version__ = "0.1.0"
