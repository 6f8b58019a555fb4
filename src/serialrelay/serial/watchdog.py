"""
Response watchdog.

Enforces a maximum device response time after a client write. At most one
timer is outstanding; re-arming replaces it.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ResponseWatchdog:
    """Single shared timer armed on client writes, cancelled on device reads."""

    def __init__(
        self,
        timeout_ms: int,
        on_timeout: Callable[[], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize the watchdog.

        Args:
            timeout_ms: Maximum time allowed for the device to answer
            on_timeout: Called once when the timer fires
            loop: Event loop for the timer (running loop by default)
        """
        self.timeout_ms = timeout_ms
        self.on_timeout = on_timeout
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self.fired_count = 0

    @property
    def is_armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Start (or restart) the response timer."""
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_ms / 1000.0, self._fire)

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.fired_count += 1
        logger.debug(f"Response watchdog expired after {self.timeout_ms}ms")
        self.on_timeout()
