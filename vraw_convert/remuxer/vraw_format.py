"""
Binary layout of the .vraw recording format.

A recording is a 16-byte header followed by frame records, each of which
is a 48-byte frame header, the frame payload, and a generic metadata block
framed by an 8-byte header and an 8-byte footer. An 8-byte index header
marks the end of the frame sequence.

    RecordingHeader   <IIQ    magic, relative nsec, epoch seconds
    FrameHeader       <I5i3q  magic, stream id, frame no, width, height,
                              format, timestamp, receive timestamp, size
    GenericMetadata   <II     magic, size   (+ size opaque bytes)
    GenericFooter     <II     magic, size
    IndexHeader       <II     magic, padding

All integers are little-endian.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum

from vraw_convert.remuxer.errors import UnsupportedFormat

logger = logging.getLogger(__name__)

# =============================================================================
# Magic numbers
# =============================================================================

RECORDING_MAGIC = 0xFEEDFEED
FRAME_MAGIC = 0xAAAAFEED
GENERIC_METADATA_HEADER_MAGIC = 0xBACCDEEF
GENERIC_METADATA_FOOTER_MAGIC = 0xBACCBEEF
INDEX_HEADER_MAGIC = 0xABCDFEED

# =============================================================================
# Record layouts
# =============================================================================

RECORDING_HEADER = struct.Struct("<IIQ")
FRAME_HEADER = struct.Struct("<I5i3q")
GENERIC_METADATA_HEADER = struct.Struct("<II")
GENERIC_METADATA_FOOTER = struct.Struct("<II")
INDEX_HEADER = struct.Struct("<II")

RECORDING_HEADER_SIZE = RECORDING_HEADER.size  # 16
FRAME_HEADER_SIZE = FRAME_HEADER.size  # 48
GENERIC_METADATA_HEADER_SIZE = GENERIC_METADATA_HEADER.size  # 8
GENERIC_METADATA_FOOTER_SIZE = GENERIC_METADATA_FOOTER.size  # 8
INDEX_HEADER_SIZE = INDEX_HEADER.size  # 8

# Video placement footer some recorders append to video payloads:
# u16 metadata size followed by the bytes 00 00 00 56 4A
PLACEMENT_FOOTER = struct.Struct("<H5s")
PLACEMENT_FOOTER_MAGIC = b"\x00\x00\x00\x56\x4a"
_PLACEMENT_SEARCH_WINDOW = 12


class VideoCaptureFormat(IntEnum):
    """Payload pixel layout as stored in the frame header's format field."""

    INVALID = -1
    RGB = 0
    BGR = 1
    YUV = 2
    NV12 = 3
    YUYV = 4
    UYVY = 5
    RAW = 6
    MONO16 = 7
    RAW16 = 8
    MONO8 = 9
    H264 = -4601
    H265 = -4602
    MJPEG = -4603
    STATS = -4701

    @classmethod
    def from_raw(cls, value: int) -> "VideoCaptureFormat":
        """
        Resolve a format field into a usable capture format.

        Raises:
            UnsupportedFormat: for INVALID (-1) and any value outside the enumeration.
        """
        try:
            fmt = cls(value)
        except ValueError:
            raise UnsupportedFormat(f"Unknown video capture format {value}") from None
        if fmt is cls.INVALID:
            raise UnsupportedFormat("Frame declares the Invalid (-1) capture format")
        return fmt

    @property
    def is_raw(self) -> bool:
        return self in _RAW_PIX_FMTS

    @property
    def is_coded(self) -> bool:
        return self in _CODED_DEMUXERS

    @property
    def is_video(self) -> bool:
        return self.is_raw or self.is_coded

    @property
    def ffmpeg_pix_fmt(self) -> str:
        """ffmpeg ``-pix_fmt`` name for raw formats."""
        try:
            return _RAW_PIX_FMTS[self]
        except KeyError:
            raise UnsupportedFormat(f"{self.name} is not a raw pixel format") from None

    @property
    def ffmpeg_demuxer(self) -> str:
        """ffmpeg input format (``-f``) for this payload type."""
        if self.is_raw:
            return "rawvideo"
        try:
            return _CODED_DEMUXERS[self]
        except KeyError:
            raise UnsupportedFormat(f"{self.name} frames do not carry video") from None

    def frame_size(self, width: int, height: int) -> int | None:
        """
        Expected payload size in bytes for one frame, or None when it cannot
        be derived (coded and non-video formats).
        """
        if self in (VideoCaptureFormat.RGB, VideoCaptureFormat.BGR):
            return width * height * 3
        if self in (VideoCaptureFormat.YUV, VideoCaptureFormat.NV12):
            chroma = ((width + 1) // 2) * ((height + 1) // 2)
            return width * height + 2 * chroma
        if self in (
            VideoCaptureFormat.YUYV,
            VideoCaptureFormat.UYVY,
            VideoCaptureFormat.MONO16,
            VideoCaptureFormat.RAW16,
        ):
            return width * height * 2
        if self in (VideoCaptureFormat.RAW, VideoCaptureFormat.MONO8):
            return width * height
        return None


_RAW_PIX_FMTS = {
    VideoCaptureFormat.RGB: "rgb24",
    VideoCaptureFormat.BGR: "bgr24",
    VideoCaptureFormat.YUV: "yuv420p",
    VideoCaptureFormat.NV12: "nv12",
    VideoCaptureFormat.YUYV: "yuyv422",
    VideoCaptureFormat.UYVY: "uyvy422",
    VideoCaptureFormat.RAW: "bayer_rggb8",  # raw 8 bit sensor data
    VideoCaptureFormat.MONO16: "gray16le",
    VideoCaptureFormat.RAW16: "bayer_rggb16le",  # raw 16 bit sensor data
    VideoCaptureFormat.MONO8: "gray",
}

_CODED_DEMUXERS = {
    VideoCaptureFormat.H264: "h264",
    VideoCaptureFormat.H265: "hevc",
    VideoCaptureFormat.MJPEG: "mjpeg",
}


# =============================================================================
# Records
# =============================================================================


@dataclass(slots=True)
class RecordingHeader:
    """File-level header, read once at offset 0."""

    magic: int
    relative_nsec: int
    epoch_sec: int

    @property
    def is_valid(self) -> bool:
        return self.magic == RECORDING_MAGIC

    @property
    def start_time_ns(self) -> int:
        return self.epoch_sec * 1_000_000_000 + self.relative_nsec


@dataclass(slots=True)
class FrameRecord:
    """One captured frame. ``payload`` is empty for header-only records."""

    stream_id: int
    frame_no: int
    width: int
    height: int
    format: VideoCaptureFormat
    timestamp: int
    receive_timestamp: int
    payload_size: int
    payload: bytes = b""
    offset: int = 0  # Absolute offset of the frame magic
    index: int = 0  # Zero-based record number

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(slots=True)
class GenericMetadataBlock:
    """Opaque side-channel block following a frame payload. Content is skipped."""

    size: int
    footer_size: int
    offset: int = 0


@dataclass(slots=True)
class IndexHeader:
    """End-of-stream sentinel."""

    padding: int
    offset: int = 0


def unpack_recording_header(data: bytes) -> RecordingHeader:
    magic, relative_nsec, epoch_sec = RECORDING_HEADER.unpack(data)
    return RecordingHeader(magic=magic, relative_nsec=relative_nsec, epoch_sec=epoch_sec)


def pack_recording_header(epoch_sec: int = 0, relative_nsec: int = 0, magic: int = RECORDING_MAGIC) -> bytes:
    return RECORDING_HEADER.pack(magic, relative_nsec, epoch_sec)


def pack_frame_header(
    *,
    width: int,
    height: int,
    format: int,
    payload_size: int,
    timestamp: int = 0,
    receive_timestamp: int = 0,
    stream_id: int = 0,
    frame_no: int = 0,
    magic: int = FRAME_MAGIC,
) -> bytes:
    return FRAME_HEADER.pack(
        magic, stream_id, frame_no, width, height, int(format), timestamp, receive_timestamp, payload_size
    )


def strip_placement_footer(payload: bytes) -> bytes:
    """
    Remove a trailing video placement footer and the metadata it describes.

    The footer may be followed by a few bytes of alignment padding, so the
    last bytes of the payload are searched for the footer magic. Payloads
    without a footer are returned unchanged.
    """
    footer_len = PLACEMENT_FOOTER.size
    for pad in range(_PLACEMENT_SEARCH_WINDOW):
        start = len(payload) - footer_len - pad
        if start < 0:
            break
        metadata_size, magic = PLACEMENT_FOOTER.unpack_from(payload, start)
        if magic != PLACEMENT_FOOTER_MAGIC:
            continue
        end = start - metadata_size
        if end < 0:
            logger.debug("[vraw_format] Placement footer declares %d bytes, payload too short", metadata_size)
            return payload
        return payload[:end]
    return payload
