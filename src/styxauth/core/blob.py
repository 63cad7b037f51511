"""
styxauth Blob

Fixed-capacity binary buffer used to move handshake payloads between the
driver and a handler.

Writes never raise on overflow: they store what fits and report how many
bytes were accepted, so handlers chunk larger messages across calls.
Reads past the written data return short results.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

import attrs
from attrs import field, validators


class ByteOrder(Enum):
    """Byte order for the typed integer helpers."""

    LITTLE = "little"
    BIG = "big"


@attrs.define
class Blob:
    """
    Bounded byte buffer with a read cursor.

    ``len(blob)`` is the number of valid bytes (the write cursor);
    ``position`` is the read cursor. Both never exceed ``capacity``.

    Example:
        blob = Blob(16)
        blob.write(b"0123456789abcdefXYZ")  # 16, the rest is dropped
        blob.read(4)  # b"0123"
    """

    capacity: int = field(validator=[validators.instance_of(int), validators.ge(0)])
    byte_order: ByteOrder = ByteOrder.LITTLE
    _data: bytearray = field(init=False, repr=False)
    _length: int = field(init=False, default=0)
    _position: int = field(init=False, default=0)

    def __attrs_post_init__(self) -> None:
        self._data = bytearray(self.capacity)

    @classmethod
    def wrap(cls, data: bytes, byte_order: ByteOrder = ByteOrder.LITTLE) -> Blob:
        """Create a blob exactly as large as ``data`` and holding it."""
        blob = cls(len(data), byte_order=byte_order)
        blob.write(data)
        return blob

    # -------------------------------------------------------------------------
    # Cursor / size
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self._length

    @property
    def position(self) -> int:
        return self._position

    @property
    def remaining(self) -> int:
        """Free space left for writing."""
        return self.capacity - self._length

    @property
    def unread(self) -> int:
        """Valid bytes not yet consumed by the read cursor."""
        return self._length - self._position

    @property
    def is_full(self) -> bool:
        return self._length >= self.capacity

    def rewind(self) -> None:
        self._position = 0

    def clear(self) -> None:
        self._length = 0
        self._position = 0

    def getvalue(self) -> bytes:
        """Return all valid bytes."""
        return bytes(self._data[: self._length])

    # -------------------------------------------------------------------------
    # Raw access
    # -------------------------------------------------------------------------

    def write(self, data: bytes) -> int:
        """Append ``data`` at the write cursor; return bytes accepted."""
        return self.write_at(self._length, data)

    def write_at(self, offset: int, data: bytes) -> int:
        """
        Write ``data`` at ``offset``; return bytes accepted.

        Writing beyond the current end extends the valid region (any gap is
        zero-filled). Offsets outside the buffer accept nothing.
        """
        if offset < 0 or offset > self.capacity:
            return 0
        count = min(len(data), self.capacity - offset)
        if count <= 0:
            return 0
        self._data[offset : offset + count] = data[:count]
        self._length = max(self._length, offset + count)
        return count

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes at the read cursor."""
        chunk = self.read_at(self._position, size)
        self._position += len(chunk)
        return chunk

    def read_at(self, offset: int, size: int) -> bytes:
        """Read up to ``size`` bytes at ``offset`` without moving the cursor."""
        if offset < 0 or size <= 0 or offset >= self._length:
            return b""
        return bytes(self._data[offset : min(offset + size, self._length)])

    def read_remaining(self) -> bytes:
        return self.read(self.unread)

    # -------------------------------------------------------------------------
    # Typed helpers
    # -------------------------------------------------------------------------

    def put_byte(self, value: int) -> int:
        return self._put_int(value, 1)

    def put_short(self, value: int) -> int:
        return self._put_int(value, 2)

    def put_int(self, value: int) -> int:
        return self._put_int(value, 4)

    def get_byte(self) -> int:
        """Next byte, or -1 at the end of the data."""
        chunk = self.read(1)
        return chunk[0] if chunk else -1

    def get_short(self) -> Optional[int]:
        return self._get_int(2)

    def get_int(self) -> Optional[int]:
        return self._get_int(4)

    def put_delim_string(self, text: str) -> int:
        """Write ``text`` as NUL-terminated UTF-8."""
        return self.write(text.encode("utf-8") + b"\x00")

    def get_delim_string(self) -> str:
        """Read a NUL-terminated string (or up to the end of the data)."""
        rest = self._data[self._position : self._length]
        end = rest.find(0)
        if end < 0:
            raw = bytes(rest)
            self._position = self._length
        else:
            raw = bytes(rest[:end])
            self._position += end + 1
        return raw.decode("utf-8", errors="replace")

    def put_len_string(self, text: str) -> int:
        """Write ``text`` with a 2-byte length prefix."""
        raw = text.encode("utf-8")
        header = len(raw).to_bytes(2, self.byte_order.value)
        return self.write(header + raw)

    def get_len_string(self) -> Optional[str]:
        length = self.get_short()
        if length is None:
            return None
        raw = self.read(length)
        if len(raw) < length:
            return None
        return raw.decode("utf-8", errors="replace")

    def put_padded_string(self, text: str, width: int) -> int:
        """Write ``text`` into a fixed ``width`` field, NUL padded."""
        return self.write(pad_field(text, width))

    def get_padded_string(self, width: int) -> str:
        return unpad_field(self.read(width))

    def _put_int(self, value: int, width: int) -> int:
        mask = (1 << (8 * width)) - 1
        return self.write((value & mask).to_bytes(width, self.byte_order.value))

    def _get_int(self, width: int) -> Optional[int]:
        if self.unread < width:
            self._position = self._length
            return None
        return int.from_bytes(self.read(width), self.byte_order.value)


def pad_field(text: str, width: int) -> bytes:
    """Encode ``text`` as a NUL padded field; always keeps a trailing NUL."""
    raw = text.encode("utf-8")[: width - 1]
    return raw + b"\x00" * (width - len(raw))


def unpad_field(raw: bytes) -> str:
    end = raw.find(b"\x00")
    if end >= 0:
        raw = raw[:end]
    return raw.decode("utf-8", errors="replace")
