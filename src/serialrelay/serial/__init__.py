"""
Serial side of the relay.

Handles serial port discovery, the serial connection state machine, the TCP
fan-out server and the response watchdog.
"""

from serialrelay.serial.connection import SerialConnection, SerialEvent
from serialrelay.serial.discovery import PortDiscovery
from serialrelay.serial.relay import RelayServer, to_hex
from serialrelay.serial.watchdog import ResponseWatchdog

__all__ = [
    "PortDiscovery",
    "SerialConnection",
    "SerialEvent",
    "RelayServer",
    "ResponseWatchdog",
    "to_hex",
]
