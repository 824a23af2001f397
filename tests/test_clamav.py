import asyncio
import io

import pytest

from chowder.clamav import ClamAV, PingResult, ScanResult, parse_address
from chowder.errors import ConnectError, InputError, ReadError, WriteError
from chowder.framing import INSTREAM, PING, TERMINATOR, encode_chunk
from chowder.metrics import ByteCounters
from chowder.pools import pool_for
from stub_daemon import StubDaemon, instream_payload

LOREM = (
    b"Lorem ipsum dolor sit amet, consectetur adipiscing elit, sed do eiusmod "
    b"tempor incididunt ut labore et dolore magna aliqua."
)
EICAR_REPLY = b"stream: Eicar-Test-Signature FOUND\0"


class FakeWriter:
    """Enough of ``asyncio.StreamWriter`` to script write failures."""

    def __init__(self, closing=False, drain_error=None, fail_after=0):
        self.closing = closing
        self.drain_error = drain_error
        self.fail_after = fail_after
        self.drains = 0
        self.written = []
        self.closed = False
        self.reader = None

    def is_closing(self):
        return self.closing or self.closed

    def write(self, data):
        self.written.append(bytes(data))

    async def drain(self):
        self.drains += 1
        if self.drain_error is not None and self.drains > self.fail_after:
            raise self.drain_error

    def close(self):
        self.closed = True
        # Closing the transport ends the paired reader, as a socket would
        if isinstance(self.reader, asyncio.StreamReader):
            self.reader.feed_eof()

    async def wait_closed(self):
        pass


class FailingReader:
    async def read(self, n):
        raise ConnectionResetError("connection reset by peer")


class ScriptedClamAV(ClamAV):
    """Client whose connection is supplied by the test."""

    def __init__(self, reader_factory, writer, **kwargs):
        super().__init__("scripted:3310", **kwargs)
        self.reader_factory = reader_factory
        self.writer = writer

    async def _connect(self):
        reader = self.reader_factory()
        self.writer.reader = reader
        return reader, self.writer


def replying_reader(reply):
    def factory():
        reader = asyncio.StreamReader()
        reader.feed_data(reply)
        reader.feed_eof()
        return reader
    return factory


def silent_reader():
    # Produces nothing until the writer is closed
    return asyncio.StreamReader()


def unfinished_reader(reply):
    def factory():
        reader = asyncio.StreamReader()
        reader.feed_data(reply)
        return reader
    return factory


class FailingSource:
    """Upload source that breaks after handing out one chunk."""

    def __init__(self):
        self.calls = 0

    def read(self, size):
        self.calls += 1
        if self.calls > 1:
            raise OSError("upload interrupted")
        return b"partial"


class AsyncSource:
    def __init__(self, data):
        self._data = io.BytesIO(data)

    async def read(self, size):
        return self._data.read(size)


def test_parse_address():
    assert parse_address("127.0.0.1:3310") == ("127.0.0.1", 3310)
    assert parse_address("clamd:3311") == ("clamd", 3311)
    assert parse_address("tcp://clamd:3312") == ("clamd", 3312)
    assert parse_address("clamd") == ("clamd", 3310)
    with pytest.raises(ValueError):
        parse_address("clamd:port")


def test_scan_clean_stream():
    async def run():
        async with StubDaemon(b"stream: OK\0") as daemon:
            result = await ClamAV(daemon.address, counters=ByteCounters()).scan_stream(io.BytesIO(LOREM))
        return result, daemon.requests

    result, requests = asyncio.run(run())
    assert result == ScanResult(infected=False, message="stream: OK")
    assert requests == [INSTREAM + encode_chunk(LOREM) + TERMINATOR]


def test_scan_infected_stream():
    async def run():
        async with StubDaemon(EICAR_REPLY) as daemon:
            return await ClamAV(daemon.address, counters=ByteCounters()).scan_stream(io.BytesIO(b"X5O!P%@AP"))

    infected, message = asyncio.run(run())
    assert infected is True
    assert message == "stream: Eicar-Test-Signature FOUND"


def test_scan_splits_input_at_buffer_size():
    data = bytes(range(256)) * 3

    async def run():
        async with StubDaemon() as daemon:
            await ClamAV(daemon.address, counters=ByteCounters(), chunk_size=100).scan_stream(io.BytesIO(data))
        return daemon.requests[0]

    raw = asyncio.run(run())
    chunks = [data[i:i + 100] for i in range(0, len(data), 100)]
    assert raw == INSTREAM + b"".join(encode_chunk(c) for c in chunks) + TERMINATOR


def test_scan_accepts_async_source():
    async def run():
        async with StubDaemon() as daemon:
            await ClamAV(daemon.address, counters=ByteCounters(), chunk_size=16).scan_stream(AsyncSource(LOREM))
        return daemon.requests[0]

    assert instream_payload(asyncio.run(run())) == LOREM


def test_scan_empty_input_sends_only_command_and_terminator():
    async def run():
        async with StubDaemon() as daemon:
            result = await ClamAV(daemon.address, counters=ByteCounters()).scan_stream(io.BytesIO(b""))
        return result, daemon.requests[0]

    result, raw = asyncio.run(run())
    assert result.infected is False
    assert raw == INSTREAM + TERMINATOR


def test_scan_byte_accounting():
    data = b"0123456789" * 25
    chunk_size = 64
    k = -(-len(data) // chunk_size)
    reply = b"stream: OK\0"
    counters = ByteCounters()

    async def run():
        async with StubDaemon(reply) as daemon:
            await ClamAV(daemon.address, counters=counters, chunk_size=chunk_size).scan_stream(io.BytesIO(data))

    asyncio.run(run())
    assert counters.written == len(INSTREAM) + 4 * k + len(data) + 4
    assert counters.read == len(reply)


def test_scan_is_repeatable():
    async def run():
        async with StubDaemon(EICAR_REPLY) as daemon:
            scanner = ClamAV(daemon.address, counters=ByteCounters())
            first = await scanner.scan_stream(io.BytesIO(LOREM))
            second = await scanner.scan_stream(io.BytesIO(LOREM))
        return first, second

    first, second = asyncio.run(run())
    assert first == second


def test_ping_healthy():
    async def run():
        async with StubDaemon(b"PONG\0") as daemon:
            result = await ClamAV(daemon.address, counters=ByteCounters()).ping()
        return result, daemon.requests

    result, requests = asyncio.run(run())
    assert result == PingResult(healthy=True, message="PONG")
    assert requests == [PING]


def test_ping_without_pong_is_unhealthy_not_an_error():
    async def run():
        async with StubDaemon(b"UNKNOWN COMMAND\0") as daemon:
            return await ClamAV(daemon.address, counters=ByteCounters()).ping()

    assert asyncio.run(run()) == PingResult(healthy=False, message="UNKNOWN COMMAND")


@pytest.mark.parametrize(
    "operation, size, hang_up",
    [
        ("ping", 0, False),
        ("scan", len(LOREM), False),
        ("ping", 0, True),
        ("scan", len(LOREM), True),
        # Large enough that the upload is still being written when the peer goes away
        ("scan", 4 * 1024 * 1024, True),
    ],
)
def test_daemon_closing_without_reply_is_read_error(operation, size, hang_up):
    data = (LOREM * (size // len(LOREM) + 1))[:size]

    async def run():
        async with StubDaemon(b"", hang_up=hang_up) as daemon:
            scanner = ClamAV(daemon.address, counters=ByteCounters())
            if operation == "scan":
                await scanner.scan_stream(io.BytesIO(data))
            else:
                await scanner.ping()

    with pytest.raises(ReadError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.reply == ""


def test_connect_failure_writes_nothing(closed_port_address):
    counters = ByteCounters()

    with pytest.raises(ConnectError):
        asyncio.run(ClamAV(closed_port_address, counters=counters).scan_stream(io.BytesIO(LOREM)))
    assert counters.written == 0
    assert counters.read == 0


def test_input_failure_is_reported():
    async def run():
        async with StubDaemon() as daemon:
            await ClamAV(daemon.address, counters=ByteCounters()).scan_stream(FailingSource())

    with pytest.raises(InputError, match="upload interrupted"):
        asyncio.run(run())


def test_command_write_failure_closes_connection():
    writer = FakeWriter(closing=True)
    scanner = ScriptedClamAV(unfinished_reader(b"UNKNOWN COMMAND\0"), writer, counters=ByteCounters())

    with pytest.raises(WriteError, match="failed writing command"):
        asyncio.run(scanner.ping())
    assert writer.closed


def test_stream_write_failure_is_reported():
    # Command and prefix go through, the chunk payload does not
    writer = FakeWriter(drain_error=BrokenPipeError("broken pipe"), fail_after=2)
    counters = ByteCounters()
    reader = unfinished_reader(b"INSTREAM size limit exceeded. ERROR\0")
    scanner = ScriptedClamAV(reader, writer, counters=counters)

    with pytest.raises(WriteError, match="failed writing scan content"):
        asyncio.run(scanner.scan_stream(io.BytesIO(LOREM)))
    assert writer.closed
    assert counters.written == len(INSTREAM) + 4


def test_write_failure_without_reply_reports_the_read_side():
    writer = FakeWriter(drain_error=BrokenPipeError("broken pipe"), fail_after=2)
    scanner = ScriptedClamAV(silent_reader, writer, counters=ByteCounters())

    with pytest.raises(ReadError, match="without a reply") as excinfo:
        asyncio.run(scanner.scan_stream(io.BytesIO(LOREM)))
    assert isinstance(excinfo.value.__cause__, WriteError)
    assert "failed writing scan content" in str(excinfo.value.__cause__)
    assert writer.closed


def test_read_failure_after_successful_writes():
    writer = FakeWriter()
    scanner = ScriptedClamAV(FailingReader, writer, counters=ByteCounters())

    with pytest.raises(ReadError, match="failed getting response"):
        asyncio.run(scanner.scan_stream(io.BytesIO(LOREM)))
    assert writer.written == [INSTREAM, encode_chunk(LOREM)[:4], LOREM, TERMINATOR]
    assert writer.closed


def test_scripted_connection_reply_and_accounting():
    resp = b"nothing\0"
    writer = FakeWriter()
    counters = ByteCounters()
    scanner = ScriptedClamAV(replying_reader(resp), writer, counters=counters)

    infected, message = asyncio.run(scanner.scan_stream(io.BytesIO(LOREM)))

    assert infected is False
    assert message == "nothing"
    assert counters.written == len(INSTREAM) + 4 + len(LOREM) + len(TERMINATOR)
    assert counters.read == len(resp)
    assert writer.closed


def test_concurrent_scans_receive_their_own_replies():
    def echo(request):
        return b"stream: " + instream_payload(request) + b" OK\0"

    payloads = [f"upload-{i}-".encode() * (i + 1) for i in range(20)]

    async def run():
        async with StubDaemon(echo) as daemon:
            scanner = ClamAV(daemon.address, counters=ByteCounters(), chunk_size=8)
            return await asyncio.gather(*(scanner.scan_stream(io.BytesIO(p)) for p in payloads))

    results = asyncio.run(run())
    for payload, result in zip(payloads, results):
        assert result.message == f"stream: {payload.decode()} OK"


def test_reply_sent_before_body_is_read_comes_back_intact():
    data = LOREM * (3 * 1024 * 1024 // len(LOREM))

    async def run():
        async with StubDaemon(b"stream: early FOUND\0", reply_first=True) as daemon:
            scanner = ClamAV(daemon.address, counters=ByteCounters())
            result = await scanner.scan_stream(io.BytesIO(data))
        return result, daemon.requests[0]

    result, raw = asyncio.run(run())
    assert result == ScanResult(True, "stream: early FOUND")
    assert instream_payload(raw) == data


class NonBlockingSource:
    """Raw stream with no data ready, the way ``readinto`` reports it."""

    def readinto(self, buf):
        return None


def test_source_without_ready_data_is_input_error():
    async def run():
        async with StubDaemon() as daemon:
            await ClamAV(daemon.address, counters=ByteCounters()).scan_stream(NonBlockingSource())

    with pytest.raises(InputError, match="without blocking"):
        asyncio.run(run())


def test_scan_returns_buffers_to_pool_on_failure():
    pool = pool_for(37)

    async def run():
        async with StubDaemon() as daemon:
            await ClamAV(daemon.address, counters=ByteCounters(), chunk_size=37).scan_stream(FailingSource())

    with pytest.raises(InputError):
        asyncio.run(run())
    assert len(pool) == 1
