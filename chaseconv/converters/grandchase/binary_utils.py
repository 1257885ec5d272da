"""
Little-endian binary reading/writing for the GrandChase formats.

The reader never returns partial data: every read checks the remaining
length first and raises ParseError naming the block that was cut short.
"""

import struct
from typing import Tuple

from chaseconv.exceptions import EncodeError, ParseError


class BinaryReader:
    """Sequential reader over an in-memory buffer."""

    def __init__(self, data: bytes, label: str):
        self.data = data
        self.label = label
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def read(self, fmt: str, block: str) -> Tuple:
        """Unpack `fmt` (little-endian prefix added) at the current position."""
        fmt = '<' + fmt
        size = struct.calcsize(fmt)
        if size > self.remaining:
            raise ParseError(f"{self.label} truncated in {block}", offset=self.pos)
        values = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += size
        return values

    def read_bytes(self, size: int, block: str) -> bytes:
        if size > self.remaining:
            raise ParseError(f"{self.label} truncated in {block}", offset=self.pos)
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return bytes(chunk)

    def expect_end(self) -> None:
        if self.remaining:
            raise ParseError(f"{self.label} has {self.remaining} trailing bytes", offset=self.pos)


class BinaryWriter:
    """Append-only little-endian writer."""

    def __init__(self, label: str):
        self.label = label
        self.buffer = bytearray()

    def write(self, fmt: str, *values) -> None:
        try:
            self.buffer += struct.pack('<' + fmt, *values)
        except struct.error as e:
            raise EncodeError(f"Cannot encode {self.label}: {e}") from e

    def write_bytes(self, data: bytes) -> None:
        self.buffer += data

    def getvalue(self) -> bytes:
        return bytes(self.buffer)


def read_c_string(raw: bytes) -> str:
    """Decode a zero-padded fixed-width string, stopping at the first NUL."""
    end = raw.find(b'\x00')
    if end >= 0:
        raw = raw[:end]
    return raw.decode('latin-1')


def pack_c_string(text: str, width: int) -> bytes:
    """Encode a string into a zero-padded fixed-width field."""
    try:
        raw = text.encode('latin-1')
    except UnicodeEncodeError as e:
        raise EncodeError(f"String '{text}' cannot be stored in a {width}-byte field") from e
    if len(raw) > width:
        raise EncodeError(f"String '{text}' is longer than its {width}-byte field")
    return raw + b'\x00' * (width - len(raw))
