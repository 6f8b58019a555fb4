"""
Relay status computation.

Derives a single health status from the relay state and emits it to the host
only when it differs from the last emitted status.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from serialrelay.core.models import (
    NONE_PATH,
    ConnectionState,
    SerialPortDescriptor,
    StatusCode,
    StatusSnapshot,
    describe_error,
)
from serialrelay.health.host import HostInterface

logger = logging.getLogger(__name__)

# Discovery and opening take a few moments to settle after (re)configuration
STARTUP_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class StatusInputs:
    """Everything the status depends on, captured at one instant."""

    is_listening: bool
    listen_port: int
    last_error: Optional[BaseException] = None
    discovered_ports: Optional[tuple[SerialPortDescriptor, ...]] = None
    elapsed: float = 0.0
    serial_path: str = NONE_PATH
    state: ConnectionState = ConnectionState.UNCONFIGURED


def compute_status(
    inputs: StatusInputs, grace_period: float = STARTUP_GRACE_SECONDS
) -> Optional[StatusSnapshot]:
    """
    Compute the relay status. First matching rule wins.

    Returns:
        The status to report, or None while the relay is still settling
    """
    if inputs.is_listening:
        return StatusSnapshot.info(
            StatusCode.OK, f"Listening on TCP port {inputs.listen_port}"
        )

    if inputs.last_error is not None:
        return StatusSnapshot.error(
            StatusCode.ERROR, f"Error: {describe_error(inputs.last_error)}"
        )

    if inputs.discovered_ports is None or inputs.elapsed < grace_period:
        return None

    if len(inputs.discovered_ports) == 0:
        return StatusSnapshot.error(
            StatusCode.CONNECTION_FAILURE, "No serial ports detected"
        )

    if inputs.serial_path != NONE_PATH and inputs.state in (
        ConnectionState.OPENING,
        ConnectionState.OPEN,
    ):
        return StatusSnapshot.info(
            StatusCode.CONNECTING, f"Connecting to {inputs.serial_path}"
        )

    return StatusSnapshot.error(StatusCode.BAD_CONFIG, "No serial port configured")


class StatusMonitor:
    """Edge-triggered status reporter."""

    def __init__(self, host: HostInterface, grace_period: float = STARTUP_GRACE_SECONDS):
        self.host = host
        self.grace_period = grace_period
        self.last_fingerprint: Optional[str] = None
        self.last_status: Optional[StatusSnapshot] = None

    def evaluate(self, inputs: StatusInputs) -> Optional[StatusSnapshot]:
        """Compute the status and emit it if it changed."""
        snapshot = compute_status(inputs, self.grace_period)
        if snapshot is None:
            return None
        return snapshot if self.emit(snapshot) else None

    def emit(self, snapshot: StatusSnapshot) -> bool:
        """
        Report a status unless it repeats the last one.

        Returns:
            True if the status was sent to the host
        """
        if snapshot.fingerprint == self.last_fingerprint:
            return False

        self.last_fingerprint = snapshot.fingerprint
        self.last_status = snapshot
        try:
            self.host.report_status(snapshot.level, snapshot.code, snapshot.message)
        except Exception as e:
            logger.error(f"Host failed to accept status: {e}")
        return True

    def reset(self) -> None:
        """Forget the last emitted status so the next one is always sent."""
        self.last_fingerprint = None
        self.last_status = None
