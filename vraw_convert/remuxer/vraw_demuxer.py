"""
Streaming .vraw demuxer.

Walks a .vraw byte stream record by record and yields FrameRecord objects.
The format has no resynchronisation marker, so every magic number and size
field is checked before the next read; a single misread offset would
corrupt every following record.

State machine:

  EXPECT_HEADER
    -> EXPECT_FRAME_OR_INDEX
         -- index magic --> DONE
         -- frame magic --> EXPECT_FRAME_METADATA
                         -> EXPECT_FRAME_PAYLOAD
                         -> EXPECT_GENERIC_METADATA_HEADER
                         -> EXPECT_GENERIC_METADATA_BLOCK
                         -> EXPECT_GENERIC_METADATA_FOOTER
                         -> EXPECT_FRAME_OR_INDEX

Two iteration modes share the same state machine:
  - iter_frame_headers(): metadata only, payloads are skipped (rate pass)
  - iter_frames(): payloads are read and attached (encode pass)
"""

import logging
from collections.abc import AsyncIterator
from enum import Enum

from vraw_convert.remuxer.byte_cursor import ByteCursor
from vraw_convert.remuxer.errors import ConversionError, CorruptStream, UnexpectedEof
from vraw_convert.remuxer.vraw_format import (
    FRAME_MAGIC,
    GENERIC_METADATA_FOOTER_MAGIC,
    GENERIC_METADATA_HEADER_MAGIC,
    INDEX_HEADER_MAGIC,
    RECORDING_HEADER_SIZE,
    RECORDING_MAGIC,
    FrameRecord,
    GenericMetadataBlock,
    IndexHeader,
    RecordingHeader,
    VideoCaptureFormat,
    unpack_recording_header,
)

logger = logging.getLogger(__name__)


class DecoderState(Enum):
    EXPECT_HEADER = "expect_header"
    EXPECT_FRAME_OR_INDEX = "expect_frame_or_index"
    EXPECT_FRAME_METADATA = "expect_frame_metadata"
    EXPECT_FRAME_PAYLOAD = "expect_frame_payload"
    EXPECT_GENERIC_METADATA_HEADER = "expect_generic_metadata_header"
    EXPECT_GENERIC_METADATA_BLOCK = "expect_generic_metadata_block"
    EXPECT_GENERIC_METADATA_FOOTER = "expect_generic_metadata_footer"
    DONE = "done"


class VrawDemuxer:
    """
    Single-pass .vraw record decoder.

    Usage:
        demuxer = VrawDemuxer(source.stream())
        async for frame in demuxer.iter_frames():
            await dispatcher.dispatch(frame)
        # demuxer.state is DecoderState.DONE here

    The demuxer owns the cursor position exclusively; a new instance (and a
    new byte stream) is needed for each pass over a recording.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        *,
        verify_metadata_footer: bool = True,
        verify_metadata_magic: bool = True,
    ) -> None:
        self._cursor = ByteCursor(source)
        self._verify_footer = verify_metadata_footer
        self._verify_magic = verify_metadata_magic
        self._state = DecoderState.EXPECT_HEADER
        self._header: RecordingHeader | None = None
        self._index: IndexHeader | None = None
        self._record_index = 0

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def header(self) -> RecordingHeader | None:
        return self._header

    @property
    def index(self) -> IndexHeader | None:
        return self._index

    @property
    def offset(self) -> int:
        return self._cursor.offset

    async def read_header(self) -> RecordingHeader:
        """
        Read the 16-byte recording header.

        A magic mismatch is only logged: the header region is skipped as a
        fixed-size block and decoding continues with the first frame.
        """
        self._expect(DecoderState.EXPECT_HEADER)
        header = unpack_recording_header(await self._cursor.read_span(RECORDING_HEADER_SIZE))
        if not header.is_valid:
            logger.warning(
                "[vraw_demuxer] Recording header magic 0x%08X does not match 0x%08X, continuing",
                header.magic,
                RECORDING_MAGIC,
            )
        else:
            logger.debug(
                "[vraw_demuxer] Recording header: epoch=%ds +%dns",
                header.epoch_sec,
                header.relative_nsec,
            )
        self._header = header
        self._state = DecoderState.EXPECT_FRAME_OR_INDEX
        return header

    async def iter_frame_headers(self) -> AsyncIterator[FrameRecord]:
        """Yield frame records without payloads (payload bytes are skipped)."""
        async for frame in self._iter_records(load_payload=False):
            yield frame

    async def iter_frames(self) -> AsyncIterator[FrameRecord]:
        """Yield frame records with their payloads attached."""
        async for frame in self._iter_records(load_payload=True):
            yield frame

    async def _iter_records(self, load_payload: bool) -> AsyncIterator[FrameRecord]:
        if self._state is DecoderState.EXPECT_HEADER:
            await self.read_header()
        while self._state is not DecoderState.DONE:
            try:
                frame = await self._read_record(load_payload)
            except ConversionError as e:
                if e.record_index is None:
                    e.record_index = self._record_index
                raise
            if frame is not None:
                yield frame

    async def _read_record(self, load_payload: bool) -> FrameRecord | None:
        """Read one frame record, or the index header. Returns None at DONE."""
        self._expect(DecoderState.EXPECT_FRAME_OR_INDEX)
        cursor = self._cursor
        offset = cursor.offset

        if await cursor.at_eof():
            raise UnexpectedEof(
                "Stream ended before the index header (truncated recording)",
                offset=offset,
                requested=4,
            )

        magic = await cursor.read_u32()
        if magic == INDEX_HEADER_MAGIC:
            padding = await cursor.read_u32()
            self._index = IndexHeader(padding=padding, offset=offset)
            self._state = DecoderState.DONE
            logger.debug("[vraw_demuxer] Index header at offset %d after %d frames", offset, self._record_index)
            return None
        if magic != FRAME_MAGIC:
            raise CorruptStream(
                f"Expected frame magic 0x{FRAME_MAGIC:08X} or index magic 0x{INDEX_HEADER_MAGIC:08X}, "
                f"got 0x{magic:08X}",
                offset=offset,
            )

        self._state = DecoderState.EXPECT_FRAME_METADATA
        stream_id = await cursor.read_i32()
        frame_no = await cursor.read_i32()
        width = await cursor.read_i32()
        height = await cursor.read_i32()
        raw_format = await cursor.read_i32()
        timestamp = await cursor.read_i64()
        receive_timestamp = await cursor.read_i64()
        payload_size = await cursor.read_i64()

        if payload_size < 0:
            raise CorruptStream(f"Negative payload size {payload_size}", offset=offset)

        try:
            fmt = VideoCaptureFormat.from_raw(raw_format)
        except ConversionError as e:
            e.offset = offset
            raise

        if fmt.is_raw and (width <= 0 or height <= 0):
            raise CorruptStream(f"Invalid frame dimensions {width}x{height} for {fmt.name}", offset=offset)
        if width < 0 or height < 0:
            raise CorruptStream(f"Negative frame dimensions {width}x{height}", offset=offset)

        self._state = DecoderState.EXPECT_FRAME_PAYLOAD
        if load_payload:
            payload = await cursor.read_span(payload_size)
        else:
            await cursor.skip(payload_size)
            payload = b""

        await self._read_generic_metadata()

        frame = FrameRecord(
            stream_id=stream_id,
            frame_no=frame_no,
            width=width,
            height=height,
            format=fmt,
            timestamp=timestamp,
            receive_timestamp=receive_timestamp,
            payload_size=payload_size,
            payload=payload,
            offset=offset,
            index=self._record_index,
        )
        logger.debug(
            "[vraw_demuxer] Frame #%d no=%d %s %s size=%d ts=%d rts=%d",
            frame.index,
            frame_no,
            fmt.name,
            frame.resolution,
            payload_size,
            timestamp,
            receive_timestamp,
        )
        self._record_index += 1
        self._state = DecoderState.EXPECT_FRAME_OR_INDEX
        return frame

    async def _read_generic_metadata(self) -> GenericMetadataBlock:
        """Skip the generic metadata block, validating its header and footer."""
        cursor = self._cursor

        self._state = DecoderState.EXPECT_GENERIC_METADATA_HEADER
        offset = cursor.offset
        magic = await cursor.read_u32()
        if self._verify_magic and magic != GENERIC_METADATA_HEADER_MAGIC:
            raise CorruptStream(
                f"Expected generic metadata magic 0x{GENERIC_METADATA_HEADER_MAGIC:08X}, got 0x{magic:08X}",
                offset=offset,
            )
        size = await cursor.read_u32()

        self._state = DecoderState.EXPECT_GENERIC_METADATA_BLOCK
        await cursor.skip(size)

        self._state = DecoderState.EXPECT_GENERIC_METADATA_FOOTER
        footer_offset = cursor.offset
        footer_magic = await cursor.read_u32()
        footer_size = await cursor.read_u32()
        if self._verify_magic and footer_magic != GENERIC_METADATA_FOOTER_MAGIC:
            raise CorruptStream(
                f"Expected generic metadata footer magic 0x{GENERIC_METADATA_FOOTER_MAGIC:08X}, "
                f"got 0x{footer_magic:08X}",
                offset=footer_offset,
            )
        if self._verify_footer and footer_size != size:
            raise CorruptStream(
                f"Generic metadata footer size {footer_size} does not match header size {size}",
                offset=footer_offset,
            )
        return GenericMetadataBlock(size=size, footer_size=footer_size, offset=offset)

    def _expect(self, state: DecoderState) -> None:
        if self._state is not state:
            raise RuntimeError(f"Demuxer is in state {self._state.value}, expected {state.value}")
