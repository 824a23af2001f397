"""
Process-wide byte accounting for traffic to and from the daemon.
"""

from typing import Dict


class ByteCounters:
    """Cumulative written/read byte totals.

    Counters only grow. They are updated from coroutines running on the
    event loop thread, and an increment never spans an ``await``, so no
    lock is needed. Pass a fresh instance to a client in tests to assert on
    isolated totals.
    """

    def __init__(self) -> None:
        self._written = 0
        self._read = 0

    @property
    def written(self) -> int:
        return self._written

    @property
    def read(self) -> int:
        return self._read

    def add_written(self, n: int) -> None:
        if n > 0:
            self._written += n

    def add_read(self, n: int) -> None:
        if n > 0:
            self._read += n

    def snapshot(self) -> Dict[str, int]:
        """Counter values in the shape served by ``GET /metrics``."""
        return {
            "written_bytes_total": self._written,
            "read_bytes_total": self._read,
        }


# Default instance shared by every client that is not handed its own
BYTE_COUNTERS = ByteCounters()
