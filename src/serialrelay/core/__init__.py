"""
Core components for the serial relay.

Provides configuration and the shared data models. The relay supervisor
lives in serialrelay.core.supervisor.
"""

from serialrelay.core.config import DEFAULT_CONFIG, RelayConfig, load_config
from serialrelay.core.models import (
    NONE_PORT,
    ClientConnection,
    ConfigError,
    ConnectionState,
    DiscoveryError,
    ListenError,
    RelayError,
    SerialIOError,
    SerialOpenError,
    SerialPortDescriptor,
    StatusCode,
    StatusLevel,
    StatusSnapshot,
)

__all__ = [
    "RelayConfig",
    "DEFAULT_CONFIG",
    "load_config",
    "SerialPortDescriptor",
    "NONE_PORT",
    "ClientConnection",
    "ConnectionState",
    "StatusLevel",
    "StatusCode",
    "StatusSnapshot",
    "RelayError",
    "ConfigError",
    "DiscoveryError",
    "SerialOpenError",
    "SerialIOError",
    "ListenError",
]
