"""
Frame dispatcher: decoded frames -> encoder input.

The encoder is configured once, from the first video frame (format,
resolution) and the estimated frame rate, so every following frame must
match that configuration. Payloads are forwarded verbatim: no reframing,
colour conversion or scaling happens here.
"""

import logging
from collections.abc import Awaitable, Callable

from vraw_convert.remuxer.encoder import EncodeParameters, FrameSink, OutputContainer
from vraw_convert.remuxer.errors import ConversionError, CorruptStream, UnsupportedFormat
from vraw_convert.remuxer.vraw_format import FrameRecord, VideoCaptureFormat, strip_placement_footer

logger = logging.getLogger(__name__)

SinkFactory = Callable[[EncodeParameters], Awaitable[FrameSink]]


class FrameDispatcher:
    """
    Starts the encoder lazily and streams frame payloads into it.

    Usage:
        dispatcher = FrameDispatcher(open_sink, framerate=29.97, output_path="out.mp4")
        async for frame in demuxer.iter_frames():
            await dispatcher.dispatch(frame)
        await dispatcher.close()
    """

    def __init__(
        self,
        sink_factory: SinkFactory,
        *,
        framerate: float,
        output_path: str,
        container: OutputContainer | None = None,
        strip_placement_footer: bool = False,
    ) -> None:
        if framerate <= 0:
            raise ValueError(f"Frame rate must be positive, got {framerate}")
        self._sink_factory = sink_factory
        self._framerate = framerate
        self._output_path = output_path
        self._container = container or OutputContainer.from_path(output_path)
        self._strip_placement_footer = strip_placement_footer
        self._params: EncodeParameters | None = None
        self._sink: FrameSink | None = None
        self._size_mismatch_logged = False
        self.frames_written = 0
        self.bytes_written = 0
        self.frames_skipped = 0

    @property
    def params(self) -> EncodeParameters | None:
        """Encoder configuration, available once the first frame was dispatched."""
        return self._params

    @property
    def started(self) -> bool:
        return self._sink is not None

    async def dispatch(self, frame: FrameRecord) -> None:
        """
        Forward one frame to the encoder.

        Raises:
            UnsupportedFormat: non-video format, or a format/resolution that
                differs from the first frame's.
            EncoderPipeBroken / EncoderTimeout: the encoder failed.
        """
        try:
            await self._dispatch(frame)
        except ConversionError as e:
            if e.record_index is None:
                e.record_index = frame.index
            if e.offset is None:
                e.offset = frame.offset
            raise

    async def _dispatch(self, frame: FrameRecord) -> None:
        fmt = frame.format
        if fmt is VideoCaptureFormat.STATS:
            self.frames_skipped += 1
            logger.debug("[frame_dispatcher] Skipping stats record #%d", frame.index)
            return
        if not isinstance(fmt, VideoCaptureFormat) or not fmt.is_video:
            raise UnsupportedFormat(f"Frame format {fmt!r} cannot be encoded")

        if len(frame.payload) != frame.payload_size:
            raise CorruptStream(
                f"Frame payload holds {len(frame.payload)} bytes but the header declares {frame.payload_size}"
            )

        if self._params is None:
            await self._start(frame)
        else:
            self._check_matches_encoder(frame)

        payload = frame.payload
        if self._strip_placement_footer:
            payload = strip_placement_footer(payload)

        expected = fmt.frame_size(frame.width, frame.height)
        if expected is not None and len(payload) != expected and not self._size_mismatch_logged:
            self._size_mismatch_logged = True
            logger.warning(
                "[frame_dispatcher] Frame #%d carries %d bytes, %s %s expects %d; forwarding as-is",
                frame.index,
                len(payload),
                fmt.name,
                frame.resolution,
                expected,
            )

        await self._sink.write(payload)
        self.frames_written += 1
        self.bytes_written += len(payload)

    async def _start(self, frame: FrameRecord) -> None:
        params = EncodeParameters(
            format=frame.format,
            width=frame.width,
            height=frame.height,
            framerate=self._framerate,
            output_path=self._output_path,
            container=self._container,
        )
        logger.info(
            "[frame_dispatcher] Starting encoder: %s %s @ %.3f fps -> %s (%s)",
            params.format.name,
            params.resolution,
            params.framerate,
            params.output_path,
            params.container.value,
        )
        self._sink = await self._sink_factory(params)
        self._params = params

    def _check_matches_encoder(self, frame: FrameRecord) -> None:
        params = self._params
        if frame.format is not params.format:
            raise UnsupportedFormat(
                f"Frame format changed from {params.format.name} to {frame.format.name}; "
                "mixed-format recordings are not supported"
            )
        if frame.width != params.width or frame.height != params.height:
            raise UnsupportedFormat(
                f"Frame resolution changed from {params.resolution} to {frame.resolution}; "
                "mixed-resolution recordings are not supported"
            )

    async def close(self) -> None:
        """Finalize the encoder output (no-op if no frame was dispatched)."""
        if self._sink is not None:
            await self._sink.close()

    async def abort(self) -> None:
        if self._sink is not None:
            await self._sink.abort()
