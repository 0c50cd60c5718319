"""
Pytest configuration and synthetic .vraw builders.

Recordings are assembled in memory from the same struct layouts the
demuxer reads, so tests can corrupt any single field.
"""

import pytest

from vraw_convert.configs import Settings
from vraw_convert.remuxer.encoder import BufferSink
from vraw_convert.remuxer.vraw_format import (
    GENERIC_METADATA_FOOTER,
    GENERIC_METADATA_FOOTER_MAGIC,
    GENERIC_METADATA_HEADER,
    GENERIC_METADATA_HEADER_MAGIC,
    INDEX_HEADER,
    INDEX_HEADER_MAGIC,
    VideoCaptureFormat,
    pack_frame_header,
    pack_recording_header,
)

MS = 1_000_000  # nanoseconds


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


def build_metadata(
    data: bytes = b"",
    *,
    footer_size: int | None = None,
    magic: int = GENERIC_METADATA_HEADER_MAGIC,
    footer_magic: int = GENERIC_METADATA_FOOTER_MAGIC,
) -> bytes:
    size = len(data)
    return (
        GENERIC_METADATA_HEADER.pack(magic, size)
        + data
        + GENERIC_METADATA_FOOTER.pack(footer_magic, size if footer_size is None else footer_size)
    )


def build_frame(
    payload: bytes,
    *,
    width: int = 4,
    height: int = 2,
    format: int = VideoCaptureFormat.RGB,
    timestamp: int = 0,
    receive_timestamp: int = 0,
    frame_no: int = 0,
    payload_size: int | None = None,
    metadata: bytes | None = None,
) -> bytes:
    header = pack_frame_header(
        width=width,
        height=height,
        format=format,
        payload_size=len(payload) if payload_size is None else payload_size,
        timestamp=timestamp,
        receive_timestamp=receive_timestamp,
        frame_no=frame_no,
    )
    return header + payload + (build_metadata() if metadata is None else metadata)


def build_index(padding: int = 0) -> bytes:
    return INDEX_HEADER.pack(INDEX_HEADER_MAGIC, padding)


def build_recording(*frames: bytes, index: bool = True, header: bytes | None = None) -> bytes:
    data = (pack_recording_header(epoch_sec=1_700_000_000) if header is None else header) + b"".join(frames)
    if index:
        data += build_index()
    return data


def rgb_frames(count: int, width: int, height: int, timestamps_ms: list[float] | None = None) -> list[bytes]:
    """Raw RGB frames with distinct payload bytes and the given capture times."""
    size = width * height * 3
    timestamps_ms = timestamps_ms if timestamps_ms is not None else [i * 33.3 for i in range(count)]
    return [
        build_frame(
            bytes([i % 256]) * size,
            width=width,
            height=height,
            format=VideoCaptureFormat.RGB,
            timestamp=int(timestamps_ms[i] * MS),
            frame_no=i,
        )
        for i in range(count)
    ]


@pytest.fixture
def vraw():
    """
    Namespace of recording builders.

    Usage:
        def test_something(vraw):
            data = vraw.recording(vraw.frame(b"x" * 24))
    """

    class _Builders:
        frame = staticmethod(build_frame)
        metadata = staticmethod(build_metadata)
        index = staticmethod(build_index)
        recording = staticmethod(build_recording)
        rgb_frames = staticmethod(rgb_frames)

    return _Builders


@pytest.fixture
def test_settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, enable_progress=False, queue_size=2)


@pytest.fixture
def sink_factory():
    """
    Factory fixture recording every sink it creates.

    Usage:
        factory = sink_factory()
        pipeline = ConversionPipeline(source, out, sink_factory=factory)
        factory.sinks[0].data
    """

    def _make(fail_after: int | None = None):
        async def factory(params):
            sink = BufferSink(fail_after=fail_after)
            factory.calls.append(params)
            factory.sinks.append(sink)
            return sink

        factory.calls = []
        factory.sinks = []
        return factory

    return _make
