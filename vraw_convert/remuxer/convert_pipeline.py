"""
.vraw to video conversion pipeline.

Two passes over the recording:

  1. Metadata pass   source.stream() -> VrawDemuxer.iter_frame_headers()
                       -> FrameRateEstimator (payload bytes are skipped)
  2. Encode pass     source.stream() -> VrawDemuxer.iter_frames()
                       -> producer task -> asyncio.Queue(queue_size)
                       -> FrameDispatcher.dispatch() -> FrameSink (ffmpeg)

The metadata pass also yields the first video format (used to pick the
output extension when no output path is given) and the video frame count
(used as the progress total). It is skipped when both the frame rate and
the output path are supplied by the caller.

Stopping: request_stop() is honoured between frames. The encoder input is
then closed normally so the container is finalized with the frames written
so far, and the result is flagged ``stopped``.

Failures: any error aborts the encoder and removes the output file, unless
``keep_partial_output`` is set, then re-raises to the caller.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from functools import partial

import aiofiles.os
import av

from vraw_convert.configs import Settings, settings as default_settings
from vraw_convert.remuxer.encoder import EncodeParameters, open_ffmpeg_sink
from vraw_convert.remuxer.errors import ConversionError
from vraw_convert.remuxer.frame_dispatcher import FrameDispatcher, SinkFactory
from vraw_convert.remuxer.frame_rate import FrameRateEstimate, FrameRateEstimator
from vraw_convert.remuxer.media_source import RecordingSource
from vraw_convert.remuxer.output_probe import OutputSummary, probe_output
from vraw_convert.remuxer.vraw_demuxer import VrawDemuxer
from vraw_convert.remuxer.vraw_format import VideoCaptureFormat

logger = logging.getLogger(__name__)

OUTPUT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H_%M_%S"

# Marks the end of the encode pass in the frame queue
_END = object()


def derive_output_path(
    input_path: str,
    fmt: VideoCaptureFormat | None = None,
    now: datetime | None = None,
) -> str:
    """
    Default output location: ``<stem>_<timestamp>.<ext>`` next to the input.

    MJPEG recordings keep their codec in an .mjpeg file; everything else
    becomes .mp4.
    """
    now = now or datetime.now()
    directory, name = os.path.split(input_path)
    stem = os.path.splitext(name)[0] or "recording"
    ext = "mjpeg" if fmt is VideoCaptureFormat.MJPEG else "mp4"
    return os.path.join(directory, f"{stem}_{now.strftime(OUTPUT_TIMESTAMP_FORMAT)}.{ext}")


@dataclass(slots=True)
class ScanResult:
    """Outcome of the metadata pass."""

    records: int
    video_frames: int
    first_format: VideoCaptureFormat | None
    estimate: FrameRateEstimate


@dataclass(slots=True)
class ConversionResult:
    output_path: str
    frames_decoded: int
    frames_written: int
    frames_skipped: int
    bytes_written: int
    framerate: float
    estimate: FrameRateEstimate | None = None
    params: EncodeParameters | None = None
    stopped: bool = False
    output_summary: OutputSummary | None = None


class ConversionPipeline:
    """
    Converts one recording into one video file.

    Usage:
        pipeline = ConversionPipeline(LocalFileSource("capture.vraw"), "capture.mp4")
        result = await pipeline.run()

    ``sink_factory`` replaces the ffmpeg encoder (tests pass one returning a
    BufferSink). ``on_frame`` is called after each dispatched frame with the
    number of frames dispatched so far.
    """

    def __init__(
        self,
        source: RecordingSource,
        output_path: str | None = None,
        *,
        settings: Settings | None = None,
        sink_factory: SinkFactory | None = None,
        on_frame: Callable[[int], None] | None = None,
    ) -> None:
        self._source = source
        self._output_path = output_path
        self._settings = settings or default_settings
        self._sink_factory = sink_factory or self._ffmpeg_sink_factory()
        self._on_frame = on_frame
        self._stop_requested = False
        self._scan: ScanResult | None = None

    @property
    def output_path(self) -> str | None:
        return self._output_path

    @property
    def scan_result(self) -> ScanResult | None:
        return self._scan

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Stop after the frame currently being dispatched."""
        if not self._stop_requested:
            logger.info("[pipeline] Stop requested, finishing current frame")
        self._stop_requested = True

    def _ffmpeg_sink_factory(self) -> SinkFactory:
        s = self._settings
        return partial(
            open_ffmpeg_sink,
            ffmpeg_path=s.ffmpeg_path,
            preset=s.preset,
            crf=s.crf,
            mjpeg_quality=s.mjpeg_quality,
            write_timeout=s.encoder_timeout,
            shutdown_timeout=s.encoder_shutdown_timeout,
        )

    def _new_demuxer(self, stream: AsyncIterator[bytes]) -> VrawDemuxer:
        return VrawDemuxer(
            stream,
            verify_metadata_footer=self._settings.verify_metadata_footer,
            verify_metadata_magic=self._settings.verify_metadata_magic,
        )

    def _default_output_path(self, fmt: VideoCaptureFormat | None) -> str:
        input_path = getattr(self._source, "path", None) or self._source.name
        return derive_output_path(input_path, fmt)

    async def scan(self) -> ScanResult:
        """Metadata pass: count frames and estimate the frame rate."""
        estimator = FrameRateEstimator(fallback_fps=self._settings.fallback_framerate)
        first_format = None
        records = 0
        stream = self._source.stream()
        try:
            demuxer = self._new_demuxer(stream)
            async for frame in demuxer.iter_frame_headers():
                records += 1
                if not frame.format.is_video:
                    continue
                if first_format is None:
                    first_format = frame.format
                estimator.add(frame)
        finally:
            await stream.aclose()

        self._scan = ScanResult(
            records=records,
            video_frames=len(estimator),
            first_format=first_format,
            estimate=estimator.estimate(),
        )
        logger.info(
            "[pipeline] Metadata pass: %d records, %d video frames, first format %s",
            records,
            self._scan.video_frames,
            first_format.name if first_format is not None else "none",
        )
        return self._scan

    async def run(self) -> ConversionResult:
        """
        Convert the whole recording.

        Raises:
            ConversionError: any decode or encode failure. The output file is
                removed first unless keep_partial_output is set.
        """
        s = self._settings
        estimate = None
        if s.framerate is None or self._output_path is None:
            scan = await self.scan()
            estimate = scan.estimate
            if self._output_path is None:
                self._output_path = self._default_output_path(scan.first_format)
        framerate = s.framerate if s.framerate is not None else estimate.fps
        if s.framerate is not None:
            logger.info("[pipeline] Using configured frame rate %.3f fps", framerate)

        output_path = self._output_path
        dispatcher = FrameDispatcher(
            self._sink_factory,
            framerate=framerate,
            output_path=output_path,
            strip_placement_footer=s.strip_placement_footer,
        )

        try:
            frames_decoded = await self._encode(dispatcher)
            if not dispatcher.started and not self._stop_requested:
                raise ConversionError("Recording contains no video frames")
            await dispatcher.close()
        except BaseException:
            await dispatcher.abort()
            await self._discard_output(output_path, dispatcher)
            raise

        result = ConversionResult(
            output_path=output_path,
            frames_decoded=frames_decoded,
            frames_written=dispatcher.frames_written,
            frames_skipped=dispatcher.frames_skipped,
            bytes_written=dispatcher.bytes_written,
            framerate=framerate,
            estimate=estimate,
            params=dispatcher.params,
            stopped=self._stop_requested,
        )

        if s.verify_output:
            result.output_summary = await self._verify_output(output_path, dispatcher.frames_written)

        logger.info(
            "[pipeline] %s %d frames (%d skipped, %d bytes) at %.3f fps -> %s",
            "Stopped after" if result.stopped else "Converted",
            result.frames_written,
            result.frames_skipped,
            result.bytes_written,
            framerate,
            output_path,
        )
        return result

    async def _encode(self, dispatcher: FrameDispatcher) -> int:
        """Encode pass. Returns the number of records taken from the queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._settings.queue_size)
        producer = asyncio.create_task(self._produce(queue))
        decoded = 0
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, BaseException):
                    raise item
                if self._stop_requested:
                    logger.info("[pipeline] Stopping at frame boundary before record #%d", item.index)
                    break
                decoded += 1
                await dispatcher.dispatch(item)
                if self._on_frame is not None:
                    self._on_frame(decoded)
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
        return decoded

    async def _produce(self, queue: asyncio.Queue) -> None:
        """Producer task: decode frames into the queue, then the end marker or the error."""
        stream = self._source.stream()
        try:
            demuxer = self._new_demuxer(stream)
            async for frame in demuxer.iter_frames():
                await queue.put(frame)
                if self._stop_requested:
                    break
        except Exception as e:
            await queue.put(e)
            return
        finally:
            await stream.aclose()
        await queue.put(_END)

    async def _discard_output(self, output_path: str, dispatcher: FrameDispatcher) -> None:
        if not dispatcher.started or not await aiofiles.os.path.exists(output_path):
            return
        if self._settings.keep_partial_output:
            logger.warning(
                "[pipeline] Conversion failed after %d frames; keeping partial output %s",
                dispatcher.frames_written,
                output_path,
            )
            return
        try:
            await aiofiles.os.remove(output_path)
            logger.info("[pipeline] Removed incomplete output %s", output_path)
        except OSError as e:
            logger.warning("[pipeline] Could not remove incomplete output %s: %s", output_path, e)

    async def _verify_output(self, output_path: str, frames_written: int) -> OutputSummary | None:
        loop = asyncio.get_running_loop()
        try:
            summary = await loop.run_in_executor(None, probe_output, output_path)
        except (av.error.FFmpegError, ValueError) as e:
            logger.warning("[pipeline] Could not probe output %s: %s", output_path, e)
            return None
        if summary.frames != frames_written:
            logger.warning(
                "[pipeline] Output %s holds %d frames, %d were written",
                output_path,
                summary.frames,
                frames_written,
            )
        else:
            logger.info(
                "[pipeline] Output verified: %s %dx%d, %d frames, %.2fs",
                summary.codec_name,
                summary.width,
                summary.height,
                summary.frames,
                summary.duration_seconds,
            )
        return summary

