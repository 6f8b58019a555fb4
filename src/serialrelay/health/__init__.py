"""
Health reporting for the serial relay.

Provides status computation with duplicate suppression and the host
collaborator interface statuses are reported through.
"""

from serialrelay.health.host import ConsoleHost, HostInterface, LogHost, MultiHost
from serialrelay.health.status import (
    STARTUP_GRACE_SECONDS,
    StatusInputs,
    StatusMonitor,
    compute_status,
)

__all__ = [
    # Status
    "StatusInputs",
    "StatusMonitor",
    "compute_status",
    "STARTUP_GRACE_SECONDS",
    # Host
    "HostInterface",
    "LogHost",
    "ConsoleHost",
    "MultiHost",
]
