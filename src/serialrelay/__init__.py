"""
Serial relay (serialrelay).

Bridges a single serial device to one or more TCP clients, forwarding bytes
in both directions and reporting live health status.
"""

__version__ = "0.1.0"
