"""VNC display port pool.

QEMU addresses VNC displays by index (`-vnc :N` listens on 5900 + N), so the
pool hands out ports from a fixed window and the command builder converts
them back to display indices.
"""

import random

from qemu_conductor._logging import get_logger
from qemu_conductor.constants import VNC_BASE_PORT, VNC_MAX_PORT

logger = get_logger(__name__)


class VncPortPool:
    """Allocates unique display ports in [floor, ceiling].

    Only ports handed out by this pool are tracked; the pool does not probe
    the host for listeners.
    """

    def __init__(self, floor: int = VNC_BASE_PORT, ceiling: int = VNC_MAX_PORT) -> None:
        if floor > ceiling:
            raise ValueError(f"Invalid port range: {floor}-{ceiling}")
        self.floor = floor
        self.ceiling = ceiling
        self._in_use: set[int] = set()

    def allocate(self, preferred: int | None = None) -> int:
        """Reserve and return a port.

        The preferred port is returned when it is free and in range. Otherwise
        the range is scanned upward from just after the preferred port (or
        from the floor), wrapping once. When every port is taken a random
        in-range port is returned; it may collide with a running display.
        """
        if preferred is not None and self._is_free(preferred):
            self._in_use.add(preferred)
            return preferred

        start = self.floor
        if preferred is not None and self.floor <= preferred < self.ceiling:
            start = preferred + 1

        for port in (*range(start, self.ceiling + 1), *range(self.floor, start)):
            if port not in self._in_use:
                self._in_use.add(port)
                return port

        port = random.randint(self.floor, self.ceiling)  # noqa: S311
        logger.warning(
            "VNC port range exhausted, reusing a random port",
            extra={"port": port, "floor": self.floor, "ceiling": self.ceiling},
        )
        return port

    def release(self, port: int | None) -> None:
        """Return a port to the pool. Unknown ports and None are ignored."""
        if port is not None:
            self._in_use.discard(port)

    def in_use(self) -> frozenset[int]:
        return frozenset(self._in_use)

    def clear(self) -> None:
        self._in_use.clear()

    def _is_free(self, port: int) -> bool:
        return self.floor <= port <= self.ceiling and port not in self._in_use

    def __contains__(self, port: object) -> bool:
        return port in self._in_use

    def __len__(self) -> int:
        return len(self._in_use)
