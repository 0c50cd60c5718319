"""
Sequential typed reader over an async byte stream.

Architecture:
  AsyncIterator[bytes] -> ReadBuffer -> ByteCursor (u32/i32/u64/i64/span/skip)

Reads never return partial data: either the full width is available or
``UnexpectedEof`` is raised with the absolute offset of the failed read.
"""

import struct
from collections.abc import AsyncIterator

from vraw_convert.remuxer.errors import UnexpectedEof

_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")


class ReadBuffer:
    """
    Unread bytes pulled from the source, tagged with their absolute position.

    Bytes are appended to one bytearray and read from a moving start index.
    The read part is dropped once it outgrows the unread part, so memory
    stays bounded by the largest span read at once.
    """

    __slots__ = ("_data", "_start", "offset")

    def __init__(self) -> None:
        self._data = bytearray()
        self._start = 0
        self.offset = 0  # Absolute position of the first unread byte

    def __len__(self) -> int:
        return len(self._data) - self._start

    def extend(self, chunk: bytes) -> None:
        if self._start and self._start >= len(self):
            del self._data[: self._start]
            self._start = 0
        self._data += chunk

    def view(self, size: int) -> bytes:
        return bytes(self._data[self._start : self._start + size])

    def take(self, size: int) -> bytes:
        data = self.view(size)
        self.drop(len(data))
        return data

    def drop(self, size: int) -> int:
        """Discard up to size unread bytes. Returns the count dropped."""
        size = min(size, len(self))
        self._start += size
        self.offset += size
        if self._start == len(self._data):
            self._data.clear()
            self._start = 0
        return size


class ByteCursor:
    """
    Little-endian fixed-width reader with absolute offset tracking.

    Usage:
        cursor = ByteCursor(source.stream())
        magic = await cursor.read_u32()
        payload = await cursor.read_span(size)
    """

    def __init__(self, source: AsyncIterator[bytes]) -> None:
        self._source = source
        self._buf = ReadBuffer()
        self._exhausted = False

    @property
    def offset(self) -> int:
        """Absolute position of the next unread byte."""
        return self._buf.offset

    async def read_u32(self) -> int:
        return _U32.unpack(await self._take(4))[0]

    async def read_i32(self) -> int:
        return _I32.unpack(await self._take(4))[0]

    async def read_u64(self) -> int:
        return _U64.unpack(await self._take(8))[0]

    async def read_i64(self) -> int:
        return _I64.unpack(await self._take(8))[0]

    async def peek_u32(self) -> int:
        """Read a u32 without advancing."""
        await self._require(4)
        return _U32.unpack(self._buf.view(4))[0]

    async def read_span(self, size: int) -> bytes:
        """Return exactly size bytes."""
        return await self._take(size)

    async def skip(self, size: int) -> None:
        """
        Advance size bytes without returning them.

        Bytes beyond the current buffer are pulled from the source and
        dropped chunk by chunk, so skipping a large payload never holds
        it in memory.
        """
        if size < 0:
            raise ValueError(f"Cannot skip a negative byte count ({size})")
        start = self.offset
        remaining = size - self._buf.drop(size)
        while remaining > 0:
            chunk = await self._next_chunk()
            if chunk is None:
                raise UnexpectedEof(
                    f"Stream ended while skipping {size} bytes",
                    offset=start,
                    requested=size,
                    available=size - remaining,
                )
            # The buffer is empty here, so skipped bytes only move the offset
            if len(chunk) <= remaining:
                self._buf.offset += len(chunk)
                remaining -= len(chunk)
            else:
                self._buf.offset += remaining
                self._buf.extend(chunk[remaining:])
                remaining = 0

    async def at_eof(self) -> bool:
        """True when no further bytes can be read."""
        await self._fill(1)
        return len(self._buf) == 0

    async def _take(self, size: int) -> bytes:
        await self._require(size)
        return self._buf.take(size)

    async def _require(self, size: int) -> None:
        if size < 0:
            raise ValueError(f"Cannot read a negative byte count ({size})")
        await self._fill(size)
        if len(self._buf) < size:
            raise UnexpectedEof(
                f"Stream ended: needed {size} bytes, only {len(self._buf)} available",
                offset=self.offset,
                requested=size,
                available=len(self._buf),
            )

    async def _fill(self, needed: int) -> None:
        """Pull chunks until the buffer holds at least needed bytes or the source ends."""
        while len(self._buf) < needed:
            chunk = await self._next_chunk()
            if chunk is None:
                return
            self._buf.extend(chunk)

    async def _next_chunk(self) -> bytes | None:
        if self._exhausted:
            return None
        while True:
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                return None
            if chunk:
                return chunk
