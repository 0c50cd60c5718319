import asyncio
from datetime import datetime

import pytest

from vraw_convert.remuxer.convert_pipeline import ConversionPipeline, derive_output_path
from vraw_convert.remuxer.encoder import BufferSink, EncodeParameters
from vraw_convert.remuxer.errors import (
    ConversionError,
    CorruptStream,
    EncoderPipeBroken,
    UnexpectedEof,
    UnsupportedFormat,
)
from vraw_convert.remuxer.media_source import BytesSource, LocalFileSource
from vraw_convert.remuxer.vraw_format import VideoCaptureFormat

MS = 1_000_000


def _pipeline(data: bytes, output: str | None, settings, factory, **kwargs) -> ConversionPipeline:
    source = BytesSource(data, chunk_size=4096)
    return ConversionPipeline(source, output, settings=settings, sink_factory=factory, **kwargs)


@pytest.mark.asyncio
async def test_three_rgb_frames_end_to_end(vraw, test_settings, sink_factory, tmp_path):
    frames = vraw.rgb_frames(3, 640, 480, timestamps_ms=[0, 33, 67])
    factory = sink_factory()
    pipeline = _pipeline(vraw.recording(*frames), str(tmp_path / "out.mp4"), test_settings, factory)

    result = await pipeline.run()

    assert result.frames_written == 3
    assert result.framerate == pytest.approx(1000 / 33.5, rel=1e-3)
    assert len(factory.calls) == 1
    params = factory.calls[0]
    assert (params.width, params.height) == (640, 480)
    assert params.format.ffmpeg_pix_fmt == "rgb24"
    assert params.framerate == pytest.approx(29.85, abs=0.01)
    sink = factory.sinks[0]
    assert sink.closed and not sink.aborted
    assert [w[:1] for w in sink.writes] == [b"\x00", b"\x01", b"\x02"]
    assert all(len(w) == 640 * 480 * 3 for w in sink.writes)
    assert not result.stopped


@pytest.mark.asyncio
async def test_missing_index_fails(vraw, test_settings, sink_factory, tmp_path):
    data = vraw.recording(*vraw.rgb_frames(3, 4, 2), index=False)
    factory = sink_factory()

    with pytest.raises(UnexpectedEof):
        await _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory).run()

    assert factory.calls == []


@pytest.mark.asyncio
async def test_missing_index_fails_when_rate_is_given(vraw, test_settings, sink_factory, tmp_path):
    # No metadata pass: the failure surfaces during encoding and aborts the sink
    data = vraw.recording(*vraw.rgb_frames(3, 4, 2), index=False)
    factory = sink_factory()
    settings = test_settings.model_copy(update={"framerate": 25.0})

    with pytest.raises(UnexpectedEof):
        await _pipeline(data, str(tmp_path / "out.mp4"), settings, factory).run()

    assert len(factory.sinks[0].writes) == 3
    assert factory.sinks[0].aborted
    assert not factory.sinks[0].closed


@pytest.mark.asyncio
async def test_resolution_change_fails_before_second_payload(vraw, test_settings, sink_factory, tmp_path):
    data = vraw.recording(
        vraw.rgb_frames(1, 640, 480)[0],
        vraw.rgb_frames(1, 1280, 480)[0],
        vraw.rgb_frames(1, 640, 480)[0],
    )
    factory = sink_factory()

    with pytest.raises(UnsupportedFormat) as exc_info:
        await _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory).run()

    assert exc_info.value.record_index == 1
    assert len(factory.sinks[0].writes) == 1
    assert factory.sinks[0].aborted


@pytest.mark.asyncio
async def test_invalid_format_never_reaches_encoder(vraw, test_settings, sink_factory, tmp_path):
    data = vraw.recording(vraw.frame(b"x" * 24, format=-1))
    factory = sink_factory()

    with pytest.raises(UnsupportedFormat):
        await _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory).run()

    assert factory.calls == []


@pytest.mark.asyncio
async def test_frame_count_matches_records(vraw, test_settings, sink_factory, tmp_path):
    count = 25
    data = vraw.recording(*vraw.rgb_frames(count, 8, 4))
    factory = sink_factory()
    seen = []

    result = await _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory, on_frame=seen.append).run()

    assert result.frames_written == count
    assert len(factory.sinks[0].writes) == count
    assert seen == list(range(1, count + 1))


@pytest.mark.asyncio
async def test_stats_records_excluded(vraw, test_settings, sink_factory, tmp_path):
    data = vraw.recording(
        vraw.frame(b"s", width=0, height=0, format=VideoCaptureFormat.STATS, timestamp=5 * MS),
        *vraw.rgb_frames(3, 4, 2, timestamps_ms=[100, 150, 200]),
        vraw.frame(b"s", width=0, height=0, format=VideoCaptureFormat.STATS, timestamp=900 * MS),
    )
    factory = sink_factory()
    pipeline = _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory)

    result = await pipeline.run()

    assert result.frames_written == 3
    assert result.frames_skipped == 2
    assert result.framerate == pytest.approx(20.0)
    assert pipeline.scan_result.records == 5
    assert pipeline.scan_result.video_frames == 3


@pytest.mark.asyncio
async def test_configured_framerate_skips_metadata_pass(vraw, test_settings, sink_factory, tmp_path):
    source = BytesSource(vraw.recording(*vraw.rgb_frames(2, 4, 2)))
    factory = sink_factory()
    settings = test_settings.model_copy(update={"framerate": 12.0})
    pipeline = ConversionPipeline(source, str(tmp_path / "out.mp4"), settings=settings, sink_factory=factory)

    result = await pipeline.run()

    assert source.streams_opened == 1
    assert result.estimate is None
    assert factory.calls[0].framerate == 12.0


@pytest.mark.asyncio
async def test_single_frame_uses_fallback_rate(vraw, test_settings, sink_factory, tmp_path):
    settings = test_settings.model_copy(update={"fallback_framerate": 15.0})
    factory = sink_factory()

    data = vraw.recording(*vraw.rgb_frames(1, 4, 2))
    result = await _pipeline(data, str(tmp_path / "o.mp4"), settings, factory).run()

    assert result.estimate.is_fallback
    assert factory.calls[0].framerate == 15.0


@pytest.mark.asyncio
async def test_recording_without_video_frames_fails(vraw, test_settings, sink_factory, tmp_path):
    with pytest.raises(ConversionError, match="no video frames"):
        await _pipeline(vraw.recording(), str(tmp_path / "out.mp4"), test_settings, sink_factory()).run()


@pytest.mark.asyncio
async def test_failed_conversion_removes_output(vraw, test_settings, tmp_path):
    out = tmp_path / "out.mp4"

    async def factory(params: EncodeParameters):
        out.write_bytes(b"partial")
        return BufferSink(fail_after=1)

    data = vraw.recording(*vraw.rgb_frames(3, 4, 2))
    with pytest.raises(EncoderPipeBroken):
        await _pipeline(data, str(out), test_settings, factory).run()

    assert not out.exists()


@pytest.mark.asyncio
async def test_failed_conversion_keeps_partial_output_when_asked(vraw, test_settings, tmp_path, caplog):
    out = tmp_path / "out.mp4"

    async def factory(params: EncodeParameters):
        out.write_bytes(b"partial")
        return BufferSink(fail_after=1)

    settings = test_settings.model_copy(update={"keep_partial_output": True})
    data = vraw.recording(*vraw.rgb_frames(3, 4, 2))
    with pytest.raises(EncoderPipeBroken):
        await _pipeline(data, str(out), settings, factory).run()

    assert out.read_bytes() == b"partial"
    assert "keeping partial output" in caplog.text


@pytest.mark.asyncio
async def test_corrupt_metadata_footer_fails(vraw, test_settings, sink_factory, tmp_path):
    data = vraw.recording(vraw.frame(b"x" * 24, metadata=vraw.metadata(b"abc", footer_size=4)))
    with pytest.raises(CorruptStream):
        await _pipeline(data, str(tmp_path / "out.mp4"), test_settings, sink_factory()).run()


@pytest.mark.asyncio
async def test_stop_request_finishes_cleanly(vraw, test_settings, sink_factory, tmp_path):
    factory = sink_factory()
    data = vraw.recording(*vraw.rgb_frames(50, 4, 2))
    pipeline = None

    def on_frame(count: int) -> None:
        if count == 3:
            pipeline.request_stop()

    pipeline = _pipeline(data, str(tmp_path / "out.mp4"), test_settings, factory, on_frame=on_frame)
    result = await pipeline.run()

    assert result.stopped
    assert result.frames_written == 3
    assert factory.sinks[0].closed
    assert not factory.sinks[0].aborted


@pytest.mark.asyncio
async def test_cancellation_aborts_encoder(vraw, test_settings, tmp_path):
    started = asyncio.Event()

    class BlockingSink(BufferSink):
        async def write(self, data: bytes) -> None:
            started.set()
            await asyncio.sleep(3600)

    sink = BlockingSink()

    async def factory(params: EncodeParameters):
        return sink

    task = asyncio.create_task(
        _pipeline(vraw.recording(*vraw.rgb_frames(3, 4, 2)), str(tmp_path / "out.mp4"), test_settings, factory).run()
    )
    await asyncio.wait_for(started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sink.aborted


@pytest.mark.asyncio
async def test_default_output_path_next_to_input(vraw, test_settings, sink_factory, tmp_path):
    recording = tmp_path / "capture.vraw"
    recording.write_bytes(vraw.recording(*vraw.rgb_frames(2, 4, 2)))
    factory = sink_factory()
    pipeline = ConversionPipeline(LocalFileSource(str(recording)), None, settings=test_settings, sink_factory=factory)

    result = await pipeline.run()

    assert result.output_path.startswith(str(tmp_path / "capture_"))
    assert result.output_path.endswith(".mp4")
    assert factory.calls[0].output_path == result.output_path


def test_derive_output_path():
    now = datetime(2024, 3, 5, 14, 7, 9)
    assert derive_output_path("/data/cam.vraw", VideoCaptureFormat.RGB, now) == "/data/cam_2024-03-05T14_07_09.mp4"
    assert derive_output_path("cam.vraw", VideoCaptureFormat.MJPEG, now) == "cam_2024-03-05T14_07_09.mjpeg"
    assert derive_output_path("/data/cam.vraw", None, now).endswith(".mp4")
