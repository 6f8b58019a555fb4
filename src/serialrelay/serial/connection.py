"""
Serial connection lifecycle.

Owns the single serial endpoint. All state changes go through
SerialConnection.dispatch(), which applies a fixed transition table; the
pyserial-asyncio protocol callbacks only feed named events into it.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import serial
import serial_asyncio

from serialrelay.core.config import RelayConfig, serial_kwargs
from serialrelay.core.models import (
    ConnectionState,
    SerialIOError,
    SerialOpenError,
    describe_error,
)

logger = logging.getLogger(__name__)

Opener = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.Protocol]]]
StateListener = Callable[
    [ConnectionState, ConnectionState, "SerialEvent", Optional[BaseException]], None
]


class SerialEvent(Enum):
    """Events that drive the connection state machine."""

    SCAN = "scan"
    OPEN_REQUESTED = "open_requested"
    OPENED = "opened"
    FAILED = "failed"
    CLOSED = "closed"
    DISCONNECTED = "disconnected"
    TEARDOWN = "teardown"


_S = ConnectionState

TRANSITIONS: dict[SerialEvent, dict[ConnectionState, ConnectionState]] = {
    SerialEvent.SCAN: {
        _S.UNCONFIGURED: _S.SCANNING,
        _S.CLOSED: _S.SCANNING,
        _S.ERROR: _S.SCANNING,
    },
    SerialEvent.OPEN_REQUESTED: {
        _S.UNCONFIGURED: _S.OPENING,
        _S.SCANNING: _S.OPENING,
        _S.CLOSED: _S.OPENING,
        _S.ERROR: _S.OPENING,
    },
    SerialEvent.OPENED: {_S.OPENING: _S.OPEN},
    SerialEvent.FAILED: {_S.OPENING: _S.ERROR, _S.OPEN: _S.ERROR},
    SerialEvent.CLOSED: {_S.OPENING: _S.CLOSED, _S.OPEN: _S.CLOSED},
    SerialEvent.DISCONNECTED: {_S.OPENING: _S.CLOSED, _S.OPEN: _S.CLOSED},
    SerialEvent.TEARDOWN: {state: _S.UNCONFIGURED for state in ConnectionState},
}


class SerialProtocol(asyncio.Protocol):
    """Forwards transport callbacks to the owning SerialConnection."""

    def __init__(self, connection: "SerialConnection"):
        self.connection = connection
        self.transport: Optional[asyncio.BaseTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport
        self.connection._on_connection_made(self)

    def data_received(self, data: bytes) -> None:
        self.connection._on_data(self, data)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.connection._on_connection_lost(self, exc)


class SerialConnection:
    """
    The single serial endpoint of the relay.

    Inbound device data is handed verbatim to the on_data callback; the
    connection never frames, buffers or transforms it.
    """

    def __init__(
        self,
        on_data: Optional[Callable[[bytes], None]] = None,
        opener: Opener = serial_asyncio.create_serial_connection,
    ):
        """
        Initialize the serial connection.

        Args:
            on_data: Called with every chunk read from the device
            opener: Coroutine creating (transport, protocol); defaults to
                serial_asyncio.create_serial_connection
        """
        self.on_data = on_data
        self.opener = opener
        self.path: Optional[str] = None
        self.last_error: Optional[BaseException] = None

        self._state = ConnectionState.UNCONFIGURED
        self._listeners: list[StateListener] = []
        self._protocol: Optional[SerialProtocol] = None
        self._transport: Optional[Any] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def is_busy(self) -> bool:
        """True while an open is in progress or the port is open."""
        return self._state in (ConnectionState.OPENING, ConnectionState.OPEN)

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback for state transitions."""
        self._listeners.append(listener)

    def dispatch(
        self, event: SerialEvent, error: Optional[BaseException] = None
    ) -> bool:
        """
        Apply an event to the state machine.

        Returns:
            True if the state changed
        """
        old_state = self._state
        new_state = TRANSITIONS[event].get(old_state)
        if new_state is None:
            logger.debug(f"Ignoring {event.value} in state {old_state.value}")
            return False

        if event in (SerialEvent.FAILED, SerialEvent.DISCONNECTED):
            self.last_error = error
        elif event in (SerialEvent.OPEN_REQUESTED, SerialEvent.TEARDOWN):
            self.last_error = None

        if new_state == old_state:
            return False

        self._state = new_state
        logger.debug(
            f"Serial {self.path or '-'}: {old_state.value} -> {new_state.value} "
            f"({event.value})"
        )
        for listener in list(self._listeners):
            listener(old_state, new_state, event, error)
        return True

    async def open(self, config: RelayConfig) -> None:
        """
        Open the configured serial device.

        Raises:
            SerialOpenError: If no path is configured, the path is missing or
                the device is busy
        """
        if not config.is_port_configured:
            raise SerialOpenError("No serial port configured")
        if self.is_busy:
            raise SerialOpenError(f"Serial port {self.path} is already open")

        self._detach()
        self.path = config.serial_path
        self.dispatch(SerialEvent.OPEN_REQUESTED)

        protocol = SerialProtocol(self)
        self._protocol = protocol
        loop = asyncio.get_running_loop()
        logger.info(f"Opening serial port {self.path} at {config.baud_rate} baud")
        try:
            transport, _ = await self.opener(
                loop, lambda: protocol, self.path, **serial_kwargs(config)
            )
        except (serial.SerialException, OSError, ValueError) as e:
            if self._protocol is protocol:
                self._protocol = None
                self.dispatch(SerialEvent.FAILED, e)
            raise SerialOpenError(f"Failed to open {config.serial_path}: {e}") from e

        if self._protocol is not protocol:
            # torn down while the open was in flight
            transport.close()
            return
        self._transport = transport

    def write(self, data: bytes) -> None:
        """
        Write bytes to the device.

        Raises:
            SerialIOError: If the port is not open or the write fails
        """
        if not self.is_open or self._transport is None:
            raise SerialIOError("Serial port is not open")
        try:
            self._transport.write(data)
        except (serial.SerialException, OSError, RuntimeError) as e:
            self.dispatch(SerialEvent.FAILED, e)
            raise SerialIOError(f"Write to {self.path} failed: {e}") from e

    def close(self) -> None:
        """Operator close. Safe to call repeatedly from any state."""
        if self._transport is not None:
            logger.info(f"Closing serial port {self.path}")
        self._detach()
        self.dispatch(SerialEvent.TEARDOWN)

    def _detach(self) -> None:
        transport = self._transport
        self._protocol = None
        self._transport = None
        if transport is not None and not transport.is_closing():
            transport.close()

    def _on_connection_made(self, protocol: SerialProtocol) -> None:
        if protocol is not self._protocol:
            return
        if self._transport is None:
            self._transport = protocol.transport
        logger.info(f"Serial port {self.path} open")
        self.dispatch(SerialEvent.OPENED)

    def _on_data(self, protocol: SerialProtocol, data: bytes) -> None:
        if protocol is not self._protocol or not self.is_open:
            return
        if self.on_data:
            self.on_data(data)

    def _on_connection_lost(
        self, protocol: SerialProtocol, exc: Optional[Exception]
    ) -> None:
        if protocol is not self._protocol:
            return
        self._protocol = None
        self._transport = None
        if exc is not None:
            logger.warning(
                f"Serial port {self.path} disconnected: {describe_error(exc)}"
            )
            self.dispatch(SerialEvent.DISCONNECTED, exc)
        else:
            logger.info(f"Serial port {self.path} closed")
            self.dispatch(SerialEvent.CLOSED)
