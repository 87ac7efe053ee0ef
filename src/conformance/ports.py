"""Collision-free TCP port allocation for test servers."""

from __future__ import annotations

import logging
import threading

from src.conformance.constants import DEFAULT_PORT_BASE, DEFAULT_PORT_CEILING

logger = logging.getLogger(__name__)


class PortAllocator:
    """Hands out ports from a monotonically increasing counter.

    Past *ceiling* the counter wraps back to *base*; by then the scenarios
    that held the early ports have stopped their processes. One allocator
    is created per harness run and passed to whoever needs ports.
    """

    def __init__(
        self,
        base: int = DEFAULT_PORT_BASE,
        ceiling: int = DEFAULT_PORT_CEILING,
    ) -> None:
        if not 0 < base <= ceiling <= 65535:
            raise ValueError(f"Invalid port range {base}-{ceiling}")
        self.base = base
        self.ceiling = ceiling
        self._next = base
        self._lock = threading.Lock()

    def next_port(self) -> int:
        """Return the next port in the range."""
        with self._lock:
            port = self._next
            self._next = self.base if port >= self.ceiling else port + 1
        logger.debug("Allocated port %d", port)
        return port

    def reset(self) -> None:
        """Restart the counter at the base port."""
        with self._lock:
            self._next = self.base
