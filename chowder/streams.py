"""
Adapters that turn HTTP request bodies into upload sources for the scanner.
"""

from typing import AsyncIterable, AsyncIterator


class RequestBodyReader:
    """File-like ``read(size)`` over an async iterator of byte chunks.

    Starlette's ``request.stream()`` yields chunks of whatever size the
    server received. The scanner asks for at most one buffer's worth at a
    time, so oversized chunks are handed out in slices.
    """

    def __init__(self, chunks: AsyncIterable[bytes]):
        self._chunks: AsyncIterator[bytes] = chunks.__aiter__()
        self._pending = memoryview(b"")
        self._exhausted = False

    async def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, or ``b""`` once the body is drained."""
        if size <= 0:
            raise ValueError("read size must be positive")
        while not self._pending and not self._exhausted:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                break
            self._pending = memoryview(chunk)
        data = bytes(self._pending[:size])
        self._pending = self._pending[size:]
        return data
