"""
Streaming client for the clamd command protocol.

Each operation opens its own TCP connection, writes a command (and for
INSTREAM the framed upload) while a background task drains the reply, then
classifies the reply text:

    scanner = ClamAV("127.0.0.1:3310")
    result = await scanner.scan_stream(RequestBodyReader(request.stream()))
    if result.infected:
        ...
"""

import asyncio
import inspect
import logging
from contextlib import ExitStack
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Protocol, Tuple
from urllib.parse import urlparse

from .errors import ConnectError, InputError, ReadError, WriteError
from .framing import (
    FOUND_MARKER,
    INSTREAM,
    PING,
    PONG_MARKER,
    TERMINATOR,
    pack_length_into,
    strip_reply,
)
from .metrics import BYTE_COUNTERS, ByteCounters
from .pools import CHUNK_SIZE, PREFIX_SIZE, pool_for

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "127.0.0.1:3310"
DEFAULT_PORT = 3310
READ_SIZE = 4096


class ScanResult(NamedTuple):
    infected: bool
    message: str


class PingResult(NamedTuple):
    healthy: bool
    message: str


class VirusScanner(Protocol):
    """What the HTTP layer needs from a scanning backend."""

    async def scan_stream(self, source: Any) -> ScanResult:
        ...

    async def ping(self) -> PingResult:
        ...


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (or ``tcp://host:port``) into its parts."""
    if "://" in address:
        url = urlparse(address)
        return url.hostname or "localhost", url.port or DEFAULT_PORT
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_PORT
    if not port.isdigit():
        raise ValueError(f"invalid daemon address {address!r}")
    return host.strip("[]") or "localhost", int(port)


async def _read_into(source: Any, buf: bytearray) -> int:
    """Fill ``buf`` from a sync or async upload source, returning the count.

    Plain ``read``/``readinto`` calls run on the event loop thread, so sync
    sources must be in memory (``io.BytesIO``) or otherwise never block.
    """
    readinto = getattr(source, "readinto", None)
    if readinto is not None:
        n = readinto(buf)
        if inspect.isawaitable(n):
            n = await n
        if n is None:
            # Non-blocking raw streams return None when no data is ready yet
            raise BlockingIOError("source has no data available without blocking")
        return n
    data = source.read(len(buf))
    if inspect.isawaitable(data):
        data = await data
    n = len(data)
    if n > len(buf):
        raise ValueError(f"source returned {n} bytes when at most {len(buf)} were requested")
    buf[:n] = data
    return n


class ClamAV:
    """A clamd backed ``VirusScanner``.

    No connection is kept between calls; clamd protocol state is scoped to
    a connection. Failures raise a ``ClamdError`` subclass and are never
    retried here.
    """

    def __init__(
        self,
        address: str = DEFAULT_ADDRESS,
        counters: Optional[ByteCounters] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.address = address
        self.host, self.port = parse_address(address)
        self.counters = counters if counters is not None else BYTE_COUNTERS
        self._chunk_pool = pool_for(chunk_size)
        self._prefix_pool = pool_for(PREFIX_SIZE)

    async def scan_stream(self, source: Any) -> ScanResult:
        """Stream ``source`` to the daemon with INSTREAM and report the verdict.

        ``source`` is anything with ``read(size)`` or ``readinto(buf)``,
        either plain or awaitable. An empty read means end of data. Plain
        methods are called on the event loop, so they must not block: use
        in-memory buffers or an async source such as ``RequestBodyReader``.
        """
        logger.debug("performing scan")

        async def send_body(writer: asyncio.StreamWriter) -> None:
            await self._stream(writer, source)
            try:
                await self._send(writer, TERMINATOR)
            except OSError as e:
                raise WriteError(f"failed stopping command: {e}") from e
            logger.debug("wrote empty chunk", extra={"written": len(TERMINATOR)})

        reply = await self._execute(INSTREAM, send_body)
        return ScanResult(FOUND_MARKER in reply, reply)

    async def ping(self) -> PingResult:
        """Check the daemon answers PING with PONG."""
        logger.debug("pinging daemon")
        reply = await self._execute(PING)
        return PingResult(PONG_MARKER in reply, reply)

    async def _connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self.host, self.port)

    async def _execute(
        self,
        command: bytes,
        send_body: Optional[Callable[[asyncio.StreamWriter], Awaitable[None]]] = None,
    ) -> str:
        try:
            reader, writer = await self._connect()
        except OSError as e:
            raise ConnectError(f"could not connect to {self.address}: {e}") from e
        logger.debug("connected to clamd", extra={"connection": self.address})
        try:
            reply = bytearray()
            response = asyncio.create_task(self._read_response(reader, reply))
            try:
                try:
                    await self._send(writer, command)
                except OSError as e:
                    raise WriteError(f"failed writing command: {e}") from e
                logger.debug("wrote command", extra={"command": command.decode("ascii", "replace")})
                if send_body is not None:
                    await send_body(writer)
            except WriteError as e:
                await self._settle_after_write_error(writer, response, reply, e)
                raise
            except BaseException:
                # The reply is unusable; wait for the reader so it does not outlive us
                response.cancel()
                await asyncio.gather(response, return_exceptions=True)
                raise
            logger.debug("waiting for response")
            raw = await response
            logger.debug("received response", extra={"length": len(raw)})
            return strip_reply(raw)
        finally:
            await self._close(writer)

    async def _settle_after_write_error(
        self,
        writer: asyncio.StreamWriter,
        response: "asyncio.Task[bytes]",
        reply: bytearray,
        error: WriteError,
    ) -> None:
        """Let the reader finish once a write has failed.

        A failed write leaves the transport dead, so closing it ends the
        reader as well. If the daemon hung up without replying at all, the
        reader's ``ReadError`` is what the caller sees.
        """
        writer.close()
        (outcome,) = await asyncio.gather(response, return_exceptions=True)
        if isinstance(outcome, ReadError) and not reply:
            raise outcome from error

    async def _send(self, writer: asyncio.StreamWriter, data: bytes) -> None:
        if writer.is_closing():
            raise ConnectionResetError("connection to daemon is closed")
        writer.write(data)
        await writer.drain()
        self.counters.add_written(len(data))

    async def _stream(self, writer: asyncio.StreamWriter, source: Any) -> None:
        with ExitStack() as buffers:
            buf = buffers.enter_context(self._chunk_pool.borrow())
            prefix = buffers.enter_context(self._prefix_pool.borrow())
            while True:
                try:
                    nr = await _read_into(source, buf)
                except Exception as e:
                    raise InputError(f"failed reading scan content: {e}") from e
                logger.debug("read buffer", extra={"read": nr, "length": len(buf)})
                if nr == 0:
                    break
                pack_length_into(prefix, nr)
                try:
                    # The transport may hold on to what it is given, so hand it copies
                    await self._send(writer, bytes(prefix))
                    logger.debug("wrote prefix", extra={"written": len(prefix)})
                    await self._send(writer, bytes(buf[:nr]))
                    logger.debug("wrote chunk", extra={"written": nr})
                except OSError as e:
                    raise WriteError(f"failed writing scan content: {e}") from e

    async def _read_response(self, reader: asyncio.StreamReader, reply: bytearray) -> bytes:
        while True:
            try:
                data = await reader.read(READ_SIZE)
            except OSError as e:
                raise ReadError(f"failed getting response: {e}") from e
            if not data:
                break
            self.counters.add_read(len(data))
            reply += data
        if not reply:
            raise ReadError("failed getting response: connection closed without a reply")
        return bytes(reply)

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"error closing clamd connection: {e}")
