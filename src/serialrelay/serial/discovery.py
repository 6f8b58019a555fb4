"""
Serial port discovery.

Enumerates the serial devices visible to the host. Only devices with
hardware-identifying metadata are kept; virtual ports are ignored.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from serial.tools import list_ports

from serialrelay.core.models import NONE_PORT, DiscoveryError, SerialPortDescriptor

logger = logging.getLogger(__name__)


def _has_hardware_id(info: Any) -> bool:
    """Check whether a pyserial ListPortInfo describes real hardware."""
    if getattr(info, "location", None):
        return True
    if getattr(info, "vid", None) is not None:
        return True
    hwid = getattr(info, "hwid", None)
    return bool(hwid) and hwid != "n/a"


def to_descriptor(info: Any) -> SerialPortDescriptor:
    """Convert a pyserial ListPortInfo into a SerialPortDescriptor."""
    return SerialPortDescriptor(
        path=info.device,
        manufacturer=getattr(info, "manufacturer", None) or "Internal",
    )


def build_port_list(infos: Iterable[Any]) -> tuple[SerialPortDescriptor, ...]:
    """
    Build the discovered port list from raw enumeration results.

    The 'none' placeholder is prefixed whenever at least one real port exists.
    """
    found = [to_descriptor(info) for info in infos if _has_hardware_id(info)]
    if found:
        found.insert(0, NONE_PORT)
    return tuple(found)


class PortDiscovery:
    """
    Serial port scanner with a re-entrancy guard.

    A scan requested while another is in flight is dropped, not queued.
    """

    def __init__(self, lister: Callable[[], Iterable[Any]] = list_ports.comports):
        """
        Initialize port discovery.

        Args:
            lister: Enumeration function, defaults to pyserial's comports()
        """
        self.lister = lister
        self._ports: Optional[tuple[SerialPortDescriptor, ...]] = None
        self._scanning = False
        self.last_error: Optional[DiscoveryError] = None
        self.scan_count = 0

    @property
    def ports(self) -> Optional[tuple[SerialPortDescriptor, ...]]:
        """Discovered ports, or None if no scan has completed yet."""
        return self._ports

    @property
    def has_result(self) -> bool:
        return self._ports is not None

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def real_ports(self) -> tuple[SerialPortDescriptor, ...]:
        """Discovered ports without the 'none' placeholder."""
        return tuple(p for p in self._ports or () if not p.is_placeholder)

    def contains(self, path: str) -> bool:
        """Check whether a real port with this path was discovered."""
        return any(p.path == path for p in self.real_ports)

    def index_of(self, path: str) -> int:
        """Index of path in the discovered list, or -1."""
        for index, port in enumerate(self._ports or ()):
            if port.path == path:
                return index
        return -1

    def first_real_port(self) -> Optional[SerialPortDescriptor]:
        real = self.real_ports
        return real[0] if real else None

    async def scan(self) -> Optional[tuple[SerialPortDescriptor, ...]]:
        """
        Enumerate serial ports once.

        Returns:
            The new discovered list, or None if the scan was dropped because
            another one is in flight or enumeration failed. On failure the
            previous list is kept.
        """
        if self._scanning:
            logger.debug("Port scan already in progress, dropping request")
            return None

        self._scanning = True
        try:
            loop = asyncio.get_running_loop()
            try:
                infos = await loop.run_in_executor(None, lambda: list(self.lister()))
            except Exception as e:
                self.last_error = DiscoveryError(f"Port enumeration failed: {e}")
                logger.debug(f"list_ports: {e}")
                return None

            self._ports = build_port_list(infos)
            self.last_error = None
            self.scan_count += 1
            logger.debug(
                f"Discovered {len(self.real_ports)} serial port(s): "
                f"{', '.join(p.path for p in self.real_ports) or '-'}"
            )
            return self._ports
        finally:
            self._scanning = False

