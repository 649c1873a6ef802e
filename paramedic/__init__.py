"""Paramedic: periodic health-check scheduler."""

from __future__ import annotations

from .config import OverlapPolicy, Settings
from .health import (
    Collection,
    ConfigurationError,
    LifecycleEvent,
    ProbeError,
    ProbeTimeoutError,
    Server,
    StartOptions,
    Status,
    StatusView,
    Test,
)

__version__ = "0.3.0"


def create_server(config: Settings | None = None) -> Server:
    """Return a new, empty Paramedic server."""
    return Server(config)
