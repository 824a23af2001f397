"""Reusable byte buffers for streaming uploads."""

from contextlib import contextmanager
from typing import Iterator, List

CHUNK_SIZE = 32 * 1024
PREFIX_SIZE = 4


class BufferPool:
    """A free list of fixed-size ``bytearray`` buffers.

    ``acquire`` pops a buffer off the free list (or allocates one) so a
    buffer only ever has one holder. Holders must not touch a buffer after
    ``release``.
    """

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError("buffer size must be positive")
        self.size = size
        self._free: List[bytearray] = []

    def acquire(self) -> bytearray:
        if self._free:
            return self._free.pop()
        return bytearray(self.size)

    def release(self, buf: bytearray) -> None:
        if len(buf) != self.size:
            raise ValueError(f"expected a {self.size} byte buffer, got {len(buf)}")
        self._free.append(buf)

    @contextmanager
    def borrow(self) -> Iterator[bytearray]:
        buf = self.acquire()
        try:
            yield buf
        finally:
            self.release(buf)

    def __len__(self) -> int:
        return len(self._free)


_pools: dict[int, BufferPool] = {}


def pool_for(size: int) -> BufferPool:
    """Process-wide pool for the given size class."""
    pool = _pools.get(size)
    if pool is None:
        pool = _pools[size] = BufferPool(size)
    return pool
