"""
Bounds-checked read-only view over an input buffer.

All parsing goes through ByteView so that no header value, however large,
can cause a read past the end of the buffer. Reads that do not fit raise
ParseError instead of returning short data.
"""

import struct

from .errors import ParseError


class ByteView:
    """Read-only view over bytes with checked slicing.

    Usage:
        view = ByteView(data)
        magic = view.u16(0)
        name = view.cstring(name_offset)
    """

    def __init__(self, data: bytes | bytearray | memoryview):
        self._data = bytes(data)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytes:
        """Underlying bytes."""
        return self._data

    def contains(self, offset: int, size: int = 1) -> bool:
        """Check whether [offset, offset + size) lies inside the buffer."""
        return 0 <= offset and size >= 0 and offset + size <= len(self._data)

    def check(self, offset: int, size: int, what: str = "read") -> None:
        """Raise ParseError unless [offset, offset + size) is in bounds."""
        if not self.contains(offset, size):
            raise ParseError(
                f"Data too short for {what}: need {size} bytes at 0x{offset:x}, "
                f"buffer is {len(self._data)} bytes"
            )

    def read(self, offset: int, size: int, what: str = "read") -> bytes:
        """Return exactly `size` bytes starting at `offset`."""
        self.check(offset, size, what)
        return self._data[offset : offset + size]

    def read_available(self, offset: int, size: int) -> bytes:
        """Return up to `size` bytes at `offset`, truncated at end of buffer."""
        if offset < 0 or offset >= len(self._data) or size <= 0:
            return b""
        return self._data[offset : offset + size]

    def unpack(self, fmt: str, offset: int, what: str = "structure") -> tuple:
        """struct.unpack_from with a bounds check."""
        self.check(offset, struct.calcsize(fmt), what)
        return struct.unpack_from(fmt, self._data, offset)

    def u8(self, offset: int) -> int:
        return self.unpack("<B", offset, "u8")[0]

    def u16(self, offset: int) -> int:
        return self.unpack("<H", offset, "u16")[0]

    def u32(self, offset: int) -> int:
        return self.unpack("<I", offset, "u32")[0]

    def u64(self, offset: int) -> int:
        return self.unpack("<Q", offset, "u64")[0]

    def cstring(self, offset: int, max_length: int = 0x1000) -> bytes:
        """Read a NUL-terminated string (without the terminator).

        Raises:
            ParseError: If no terminator is found within max_length bytes or
                before the end of the buffer.
        """
        self.check(offset, 1, "string")
        end = self._data.find(b"\x00", offset, offset + max_length)
        if end < 0:
            raise ParseError(f"Unterminated string at 0x{offset:x}")
        return self._data[offset:end]
