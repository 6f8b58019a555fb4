"""
TCP fan-out server for the serial relay.

Bytes read from the serial device are broadcast to every connected client.
Bytes received from a client go only to the serial device, never to other
clients, so one client's commands are not mistaken for device output.
"""

import asyncio
import logging
from typing import Callable, Optional

from serialrelay.core.config import MAX_CLIENTS
from serialrelay.core.models import (
    ClientConnection,
    ListenError,
    RelayError,
)
from serialrelay.serial.connection import SerialConnection

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected"

# Bytes a client may leave unread before it is dropped
MAX_CLIENT_BUFFER = 256 * 1024


def to_hex(data: bytes, delim: str = " ") -> str:
    """Format bytes as two-digit hex, e.g. b'\\x01\\x02' -> '01 02'."""
    return delim.join(f"{b:02x}" for b in data)


class RelayServer:
    """
    TCP listener relaying one serial connection to up to max_clients clients.

    Clients beyond the cap are closed as soon as they are accepted, without
    receiving any bytes.
    """

    def __init__(
        self,
        connection: SerialConnection,
        port: int,
        host: str = "0.0.0.0",
        max_clients: int = MAX_CLIENTS,
        on_client_data: Optional[Callable[[bytes], None]] = None,
        on_clients_changed: Optional[Callable[[], None]] = None,
        read_size: int = 4096,
        max_buffer: int = MAX_CLIENT_BUFFER,
    ):
        """
        Initialize relay server.

        Args:
            connection: Serial connection client data is written to
            port: TCP port to listen on
            host: Address to bind
            max_clients: Maximum concurrent clients
            on_client_data: Called after each client chunk reaches the device
            on_clients_changed: Called when a client joins or leaves
            read_size: Maximum bytes read from a client at once
            max_buffer: Unsent bytes allowed per client before it is dropped
        """
        self.connection = connection
        self.port = port
        self.host = host
        self.max_clients = max_clients
        self.on_client_data = on_client_data
        self.on_clients_changed = on_clients_changed
        self.read_size = read_size
        self.max_buffer = max_buffer

        self.clients: dict[asyncio.StreamWriter, ClientConnection] = {}
        self._tasks: dict[asyncio.StreamWriter, asyncio.Task] = {}
        self._server: Optional[asyncio.AbstractServer] = None
        # bumped by stop() so a start() still binding discards its listener
        self._generation = 0

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self.clients)

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound (differs from port when port is 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """
        Start listening. Does nothing if already listening.

        Raises:
            ListenError: If the listening socket cannot be bound
        """
        if self._server is not None:
            return
        generation = self._generation
        try:
            server = await asyncio.start_server(
                self._handle_client, self.host, self.port
            )
        except OSError as e:
            raise ListenError(f"Cannot listen on TCP port {self.port}: {e}") from e

        if generation != self._generation or self._server is not None:
            logger.debug(f"Relay stopped while binding port {self.port}, closing listener")
            server.close()
            return
        self._server = server
        logger.info(f"Listening on {self.host}:{self.port}")

    def stop(self) -> None:
        """Close the listener and every client. Safe to call repeatedly."""
        self._generation += 1
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            logger.info(f"Stopped listening on port {self.port}")

        for writer in list(self.clients):
            self._drop_client(writer, "Relay stopped")

    def broadcast(self, data: bytes) -> None:
        """Write data to every active client, in client accept order."""
        failed = []
        for writer in self.clients:
            try:
                if writer.is_closing():
                    failed.append((writer, "Write failed"))
                    continue
                writer.write(data)
            except (OSError, RuntimeError) as e:
                logger.debug(f"Failed to send to {self.clients[writer].peer}: {e}")
                failed.append((writer, "Write failed"))
                continue

            # a client that stops reading must not make the relay buffer forever
            if writer.transport.get_write_buffer_size() > self.max_buffer:
                failed.append((writer, "Write buffer full"))

        for writer, reason in failed:
            self._drop_client(writer, reason)

    def client_list(self) -> str:
        """Connected clients as newline-joined 'address:port', or a marker."""
        if not self.clients:
            return NOT_CONNECTED
        return "\n".join(client.peer for client in self.clients.values())

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new client connection."""
        client = ClientConnection.from_streams(reader, writer)

        if self._server is None or len(self.clients) >= self.max_clients:
            logger.warning(f"Rejecting client {client.peer}: max clients reached")
            writer.close()
            return

        self.clients[writer] = client
        task = asyncio.current_task()
        if task is not None:
            self._tasks[writer] = task
        logger.info(f"Client {client.peer} connected")
        self._notify_clients_changed()

        try:
            await self._client_read_loop(client)
        except asyncio.CancelledError:
            pass
        except (OSError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Client {client.peer} error: {e}")
        finally:
            self._drop_client(writer, "Client disconnected")

    async def _client_read_loop(self, client: ClientConnection) -> None:
        """Read data from a client and forward it to the serial device only."""
        while True:
            data = await client.reader.read(self.read_size)
            if not data:
                break

            logger.debug(f"TCP: {to_hex(data)}")
            try:
                self.connection.write(data)
            except RelayError as e:
                logger.error(f"Dropping data from {client.peer}: {e}")
                continue

            if self.on_client_data:
                self.on_client_data(data)

    def _drop_client(self, writer: asyncio.StreamWriter, reason: str) -> None:
        """Remove a client from the active set and close it."""
        client = self.clients.pop(writer, None)
        task = self._tasks.pop(writer, None)
        if client is None:
            return

        if task is not None and task is not asyncio.current_task():
            task.cancel()
        try:
            writer.close()
        except (OSError, RuntimeError):
            pass

        logger.info(f"Client {client.peer} disconnected: {reason}")
        self._notify_clients_changed()

    def _notify_clients_changed(self) -> None:
        if self.on_clients_changed:
            self.on_clients_changed()
