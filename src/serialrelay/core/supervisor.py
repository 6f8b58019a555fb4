"""
Relay supervisor.

Applies configuration, runs periodic port discovery, opens the serial port
when it appears, starts the TCP relay once the port is open, and tears
everything down on reconfiguration or shutdown.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Coroutine, Optional

from serialrelay.core.config import MAX_CLIENTS, RelayConfig
from serialrelay.core.models import (
    ConnectionState,
    ListenError,
    SerialOpenError,
    StatusCode,
    StatusLevel,
    StatusSnapshot,
)
from serialrelay.health.host import HostInterface
from serialrelay.health.status import STARTUP_GRACE_SECONDS, StatusInputs, StatusMonitor
from serialrelay.serial.connection import Opener, SerialConnection, SerialEvent
from serialrelay.serial.discovery import PortDiscovery
from serialrelay.serial.relay import RelayServer, to_hex
from serialrelay.serial.watchdog import ResponseWatchdog

logger = logging.getLogger(__name__)

SCAN_INTERVAL_SECONDS = 5.0


@dataclass
class RelaySession:
    """Mutable state of one applied configuration."""

    config: RelayConfig
    connection: SerialConnection
    relay: RelayServer
    watchdog: Optional[ResponseWatchdog]
    started_at: float
    listen_error: Optional[ListenError] = None
    scan_task: Optional[asyncio.Task] = None
    tasks: set[asyncio.Task] = field(default_factory=set)

    def teardown(self) -> None:
        """Cancel timers, drop clients, close listener and serial port."""
        if self.scan_task is not None:
            self.scan_task.cancel()
            self.scan_task = None
        if self.watchdog is not None:
            self.watchdog.cancel()
        # start tasks are not cancelled: one still binding sees stop() and
        # closes its own listener
        self.relay.stop()
        self.connection.close()


class Supervisor:
    """
    Ties discovery, the serial connection, the relay and status together.

    All work happens on the asyncio event loop; handlers convert failures
    into state and status updates instead of raising.
    """

    def __init__(
        self,
        host: HostInterface,
        discovery: Optional[PortDiscovery] = None,
        opener: Optional[Opener] = None,
        scan_interval: float = SCAN_INTERVAL_SECONDS,
        grace_period: float = STARTUP_GRACE_SECONDS,
        max_clients: int = MAX_CLIENTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the supervisor.

        Args:
            host: Outbound status/client-list collaborator
            discovery: Port scanner (pyserial based by default)
            opener: Serial transport factory override (for tests)
            scan_interval: Seconds between discovery scans
            grace_period: Seconds after configuration before settling
                statuses are reported
            max_clients: Maximum concurrent TCP clients
            clock: Monotonic clock in seconds
        """
        self.host = host
        self.discovery = discovery or PortDiscovery()
        self.opener = opener
        self.scan_interval = scan_interval
        self.max_clients = max_clients
        self.clock = clock
        self.monitor = StatusMonitor(host, grace_period)

        self.config: Optional[RelayConfig] = None
        self.session: Optional[RelaySession] = None

    @property
    def state(self) -> ConnectionState:
        if self.session is None:
            return ConnectionState.UNCONFIGURED
        return self.session.connection.state

    async def apply_configuration(self, config: RelayConfig) -> None:
        """
        Tear down the current session and start a new one for config.

        Raises:
            ConfigError: If config is invalid (the current session is kept)
        """
        config.validate()
        self.clear_all()
        self.config = config

        if self.opener is not None:
            connection = SerialConnection(on_data=self._on_serial_data, opener=self.opener)
        else:
            connection = SerialConnection(on_data=self._on_serial_data)
        connection.add_listener(self._on_state_change)

        relay = RelayServer(
            connection,
            port=config.listen_port,
            host=config.listen_host,
            max_clients=self.max_clients,
            on_client_data=self._on_client_data,
            on_clients_changed=self._publish_clients,
        )
        watchdog = None
        if config.response_expected:
            watchdog = ResponseWatchdog(config.max_response_ms, self._on_response_timeout)

        session = RelaySession(
            config=config,
            connection=connection,
            relay=relay,
            watchdog=watchdog,
            started_at=self.clock(),
        )
        self.session = session
        logger.info(
            f"Configured serial port {config.serial_path} -> TCP port {config.listen_port}"
        )

        self._publish_clients()
        session.scan_task = asyncio.create_task(self._scan_loop(session))
        await self.scan_for_ports()

    def clear_all(self) -> None:
        """Tear down the current session. Safe to call repeatedly."""
        session = self.session
        self.session = None
        if session is not None:
            session.teardown()

    async def shutdown(self) -> None:
        """Tear down and report the relay as disabled."""
        self.clear_all()
        self.monitor.emit(StatusSnapshot.info(StatusCode.DISCONNECTED, "Disabled"))
        logger.debug("Destroyed")

    async def run(self, config: RelayConfig, stop_event: asyncio.Event) -> None:
        """Apply config and relay until stop_event is set."""
        await self.apply_configuration(config)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def scan_for_ports(self) -> None:
        """One discovery tick: rescan when closed, then open the port if found."""
        session = self.session
        if session is None:
            return
        connection = session.connection

        if not connection.is_open:
            if session.config.is_port_configured:
                connection.dispatch(SerialEvent.SCAN)
            self.update_status()
            await self.discovery.scan()
            if session is not self.session:
                return
            self.update_status()

        if connection.is_busy:
            return

        self._select_first_found(session)
        if not session.config.is_port_configured:
            return
        if not self.discovery.contains(session.config.serial_path):
            return

        try:
            await connection.open(session.config)
        except SerialOpenError as e:
            logger.debug(f"Open failed: {e}")

    def _select_first_found(self, session: RelaySession) -> None:
        config = session.config
        if not config.select_first_found or not self.discovery.has_result:
            return
        # 'none' is listed whenever real ports exist, so it counts as found
        if self.discovery.index_of(config.serial_path) >= 0:
            return

        first = self.discovery.first_real_port()
        if first is None:
            return
        logger.info(f"Previously selected port ({config.serial_path}) not found.")
        logger.info(f"Selecting first found port: {first.path}")
        session.config = config.with_serial_path(first.path)
        self.config = session.config

    async def select_previous_port(self) -> Optional[str]:
        """Switch to the previous discovered port and reapply configuration."""
        return await self._select_port(-1)

    async def select_next_port(self) -> Optional[str]:
        """Switch to the next discovered port and reapply configuration."""
        return await self._select_port(1)

    async def _select_port(self, step: int) -> Optional[str]:
        if self.config is None:
            return None
        ports = self.discovery.ports or ()
        direction = "previous" if step < 0 else "next"
        index = self.discovery.index_of(self.config.serial_path) + step

        if (step < 0 and index <= 0) or (step > 0 and index >= len(ports)):
            edge = "first" if step < 0 else "last"
            logger.info(
                f"Cannot select {direction} serial port in list: "
                f"already on the {edge} port in the list."
            )
            return None

        path = ports[index].path
        logger.info(f"Selecting {direction} serial port in list: {path}")
        await self.apply_configuration(self.config.with_serial_path(path))
        return path

    def update_status(self) -> Optional[StatusSnapshot]:
        """Recompute the status from current state and emit it if changed."""
        session = self.session
        if session is None:
            return None
        connection = session.connection
        inputs = StatusInputs(
            is_listening=session.relay.is_listening,
            listen_port=session.config.listen_port,
            last_error=session.listen_error or connection.last_error,
            discovered_ports=self.discovery.ports,
            elapsed=self.clock() - session.started_at,
            serial_path=session.config.serial_path,
            state=connection.state,
        )
        return self.monitor.evaluate(inputs)

    async def _scan_loop(self, session: RelaySession) -> None:
        while session is self.session:
            await asyncio.sleep(self.scan_interval)
            try:
                await self.scan_for_ports()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error during port scan: {e}")

    def _spawn(self, session: RelaySession, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    def _on_state_change(
        self,
        old_state: ConnectionState,
        new_state: ConnectionState,
        event: SerialEvent,
        error: Optional[BaseException],
    ) -> None:
        session = self.session
        if session is None:
            return

        if new_state == ConnectionState.OPEN:
            session.listen_error = None
            self._spawn(session, self._start_relay(session))
        elif new_state == ConnectionState.CLOSED:
            # port went away: drop every client and the listener
            if session.watchdog is not None:
                session.watchdog.cancel()
            session.relay.stop()

        self.update_status()

    async def _start_relay(self, session: RelaySession) -> None:
        try:
            await session.relay.start()
        except ListenError as e:
            session.listen_error = e
            logger.error(str(e))

        if session is not self.session:
            session.relay.stop()
            return
        if not session.connection.is_open:
            # the port went away while the listener was binding
            session.relay.stop()
        self.update_status()

    def _on_serial_data(self, data: bytes) -> None:
        session = self.session
        if session is None:
            return
        if session.watchdog is not None:
            session.watchdog.cancel()
        if session.relay.client_count:
            logger.debug(f"COM> {to_hex(data)}")
        session.relay.broadcast(data)

    def _on_client_data(self, data: bytes) -> None:
        session = self.session
        if session is not None and session.watchdog is not None:
            session.watchdog.arm()

    def _on_response_timeout(self) -> None:
        session = self.session
        if session is None:
            return
        max_ms = session.config.max_response_ms
        logger.error(
            "Error: No response received via serial connection in the max "
            f"allotted time of {max_ms}ms"
        )
        session.relay.broadcast(session.config.error_message)
        self.monitor.emit(
            StatusSnapshot(
                level=StatusLevel.ERROR,
                code=StatusCode.ERROR,
                message=f"Error: No response received within {max_ms}ms",
            )
        )

    def _publish_clients(self) -> None:
        session = self.session
        if session is None:
            return
        try:
            self.host.publish_client_list(session.relay.client_list())
        except Exception as e:
            logger.error(f"Host failed to accept client list: {e}")
        self.update_status()
