"""
Wire framing for the clamd command protocol.

Commands are sent in the null-terminated form ``z<NAME>\\0``. INSTREAM
bodies are a sequence of chunks, each prefixed with its length as an
unsigned 32-bit big-endian integer, and closed by a zero-length chunk.
"""

import struct

_LENGTH = struct.Struct(">I")
MAX_CHUNK_LENGTH = 2**32 - 1

FOUND_MARKER = "FOUND"
PONG_MARKER = "PONG"


def encode_command(name: str) -> bytes:
    """Wrap a command name in the ``z...\\0`` envelope."""
    if not name:
        raise ValueError("command name must not be empty")
    return b"z" + name.encode("ascii") + b"\0"


def encode_chunk(payload: bytes) -> bytes:
    """Length-prefix a single chunk of stream payload."""
    if len(payload) > MAX_CHUNK_LENGTH:
        raise ValueError(f"chunk of {len(payload)} bytes does not fit a 32-bit length")
    return _LENGTH.pack(len(payload)) + bytes(payload)


def encode_terminator() -> bytes:
    """The zero-length chunk that ends an INSTREAM body."""
    return _LENGTH.pack(0)


def pack_length_into(prefix: bytearray, length: int) -> None:
    """Write ``length`` into a reusable 4-byte prefix buffer."""
    _LENGTH.pack_into(prefix, 0, length)


def strip_reply(raw: bytes) -> str:
    """Decode a daemon reply and drop its NUL terminator."""
    if raw.endswith(b"\0"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


INSTREAM = encode_command("INSTREAM")
PING = encode_command("PING")
TERMINATOR = encode_terminator()
