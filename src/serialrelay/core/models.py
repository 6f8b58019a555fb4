"""
Data models for the serial relay.

Defines the port descriptors, connection states, client records and status
snapshots shared by the relay components, plus the relay error hierarchy.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

NONE_PATH = "none"


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError, ValueError):
    """Configuration snapshot failed validation."""


class DiscoveryError(RelayError):
    """Serial port enumeration failed."""


class SerialOpenError(RelayError):
    """Serial device could not be opened (missing path or device busy)."""


class SerialIOError(RelayError):
    """Write to the serial device failed."""


class ListenError(RelayError):
    """TCP listener could not be bound."""


class ConnectionState(Enum):
    """Serial connection lifecycle states."""

    UNCONFIGURED = "unconfigured"
    SCANNING = "scanning"
    OPENING = "opening"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


class StatusLevel(Enum):
    """Severity of a reported status."""

    INFO = "info"
    ERROR = "error"


class StatusCode(Enum):
    """Status codes reported to the host."""

    OK = "ok"
    CONNECTING = "connecting"
    CONNECTION_FAILURE = "connection_failure"
    BAD_CONFIG = "bad_config"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SerialPortDescriptor:
    """A serial device found by discovery."""

    path: str
    manufacturer: str = "Internal"

    @property
    def label(self) -> str:
        """Display label, e.g. 'FTDI (/dev/ttyUSB0)'."""
        return f"{self.manufacturer} ({self.path})"

    @property
    def is_placeholder(self) -> bool:
        return self.path == NONE_PATH


NONE_PORT = SerialPortDescriptor(path=NONE_PATH, manufacturer="Not configured")


@dataclass
class ClientConnection:
    """Represents a connected TCP client."""

    address: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    connected_at: datetime = field(default_factory=datetime.now)

    @property
    def peer(self) -> str:
        """Get client address as 'address:port'."""
        return f"{self.address}:{self.port}"

    @classmethod
    def from_streams(
        cls, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> "ClientConnection":
        """Create a ClientConnection from an accepted stream pair."""
        peername = writer.get_extra_info("peername")
        if peername:
            return cls(address=str(peername[0]), port=int(peername[1]),
                       reader=reader, writer=writer)
        return cls(address="unknown", port=0, reader=reader, writer=writer)


@dataclass(frozen=True)
class StatusSnapshot:
    """A single externally reported status."""

    level: StatusLevel
    code: StatusCode
    message: str

    @property
    def fingerprint(self) -> str:
        """Deduplication key built from level, message and code."""
        return f"{self.level.value}{self.message}{self.code.value}"

    @classmethod
    def info(cls, code: StatusCode, message: str) -> "StatusSnapshot":
        return cls(level=StatusLevel.INFO, code=code, message=message)

    @classmethod
    def error(cls, code: StatusCode, message: str) -> "StatusSnapshot":
        return cls(level=StatusLevel.ERROR, code=code, message=message)


def describe_error(error: Optional[BaseException]) -> Optional[str]:
    """Return a human readable message for an error, or None."""
    if error is None:
        return None
    message = str(error)
    return message if message else error.__class__.__name__
