"""
Encoder collaborators for the conversion pipeline.

The dispatcher only needs a FrameSink: something accepting ordered byte
writes that can be closed (finalize the output) or aborted (discard it).

- FFmpegEncoderSink: ffmpeg subprocess fed through its stdin pipe. stderr
  is drained on a background task so a chatty encoder can never block on a
  full pipe, and the last lines are kept for error reports.
- BufferSink: in-memory sink, used when the encoded output is not needed
  (tests, dry runs).

build_ffmpeg_command() maps EncodeParameters (capture format, resolution,
frame rate, output container) to the ffmpeg argv.
"""

import asyncio
import logging
import os
import shlex
from collections import deque
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Protocol, runtime_checkable

from vraw_convert.remuxer.errors import (
    EncoderPipeBroken,
    EncoderTimeout,
    UnsupportedContainer,
    UnsupportedFormat,
)
from vraw_convert.remuxer.vraw_format import VideoCaptureFormat

logger = logging.getLogger(__name__)

# Largest frame rate denominator passed to ffmpeg (keeps 30000/1001 exact)
_MAX_RATE_DENOMINATOR = 1001


class OutputContainer(Enum):
    MP4 = "mp4"
    MJPEG = "mjpeg"
    MPJPEG = "mpjpeg"

    @classmethod
    def from_path(cls, path: str) -> "OutputContainer":
        """Select the output container from the destination file extension."""
        ext = os.path.splitext(path)[1].lower()
        try:
            return _CONTAINER_EXTENSIONS[ext]
        except KeyError:
            raise UnsupportedContainer(
                f"Unsupported output extension {ext or '(none)'!r}; expected one of "
                f"{', '.join(sorted(_CONTAINER_EXTENSIONS))}"
            ) from None


_CONTAINER_EXTENSIONS = {
    ".mp4": OutputContainer.MP4,
    ".mjpeg": OutputContainer.MJPEG,
    ".mjpg": OutputContainer.MJPEG,
    ".mpjpeg": OutputContainer.MPJPEG,
}


@dataclass(slots=True, frozen=True)
class EncodeParameters:
    """Everything the encoder needs to know before the first frame arrives."""

    format: VideoCaptureFormat
    width: int
    height: int
    framerate: float
    output_path: str
    container: OutputContainer

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


def format_framerate(fps: float) -> str:
    """Render a frame rate as an ffmpeg rational ("30", "30000/1001", "2000/67")."""
    rate = Fraction(fps).limit_denominator(_MAX_RATE_DENOMINATOR)
    if rate.denominator == 1:
        return str(rate.numerator)
    return f"{rate.numerator}/{rate.denominator}"


def build_ffmpeg_command(
    params: EncodeParameters,
    *,
    ffmpeg_path: str = "ffmpeg",
    preset: str = "veryfast",
    crf: int = 23,
    mjpeg_quality: int = 3,
) -> list[str]:
    """
    Build the ffmpeg argv for a conversion.

    Raw payloads are described to ffmpeg as rawvideo with an explicit pixel
    format and size; coded payloads (H.264/H.265/MJPEG) are fed to the
    matching elementary stream demuxer and copied when the container allows.
    """
    fmt = params.format
    if not fmt.is_video:
        raise UnsupportedFormat(f"Cannot encode {fmt.name} frames")

    rate = format_framerate(params.framerate)
    argv = [ffmpeg_path, "-hide_banner", "-nostats", "-loglevel", "error", "-y"]

    if fmt.is_raw:
        argv += [
            "-f",
            "rawvideo",
            "-pix_fmt",
            fmt.ffmpeg_pix_fmt,
            "-s",
            params.resolution,
            "-framerate",
            rate,
        ]
    else:
        argv += ["-f", fmt.ffmpeg_demuxer, "-framerate", rate]
    argv += ["-i", "-", "-an"]

    container = params.container
    if container is OutputContainer.MP4:
        if fmt in (VideoCaptureFormat.H264, VideoCaptureFormat.H265):
            argv += ["-c:v", "copy"]
            if fmt is VideoCaptureFormat.H265:
                argv += ["-tag:v", "hvc1"]
        else:
            argv += ["-c:v", "libx264", "-preset", preset, "-crf", str(crf), "-pix_fmt", "yuv420p"]
        argv += ["-movflags", "+faststart", "-f", "mp4"]
    else:
        if fmt is VideoCaptureFormat.MJPEG:
            argv += ["-c:v", "copy"]
        else:
            argv += ["-c:v", "mjpeg", "-q:v", str(mjpeg_quality), "-pix_fmt", "yuvj420p"]
        argv += ["-f", container.value]

    argv.append(params.output_path)
    return argv


@runtime_checkable
class FrameSink(Protocol):
    """
    Ordered byte sink standing in for the encoder's input channel.

    Implementations must raise EncoderPipeBroken when the channel is closed
    underneath them, and EncoderTimeout when a write cannot complete in time.
    """

    async def write(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        """Flush and finalize the output."""
        ...

    async def abort(self) -> None:
        """Stop immediately; the output is considered invalid."""
        ...


class BufferSink:
    """
    In-memory FrameSink.

    Args:
        fail_after: If set, writes beyond this many raise EncoderPipeBroken,
            simulating an encoder that exits early.
    """

    def __init__(self, fail_after: int | None = None) -> None:
        self.writes: list[bytes] = []
        self.closed = False
        self.aborted = False
        self._fail_after = fail_after

    @property
    def data(self) -> bytes:
        return b"".join(self.writes)

    async def write(self, data: bytes) -> None:
        if self.closed or self.aborted:
            raise EncoderPipeBroken("Write to a closed sink")
        if self._fail_after is not None and len(self.writes) >= self._fail_after:
            raise EncoderPipeBroken(f"Sink closed after {self._fail_after} writes")
        self.writes.append(bytes(data))

    async def close(self) -> None:
        self.closed = True

    async def abort(self) -> None:
        self.aborted = True


class FFmpegEncoderSink:
    """
    FrameSink backed by an encoder subprocess reading frames from stdin.

    Usage:
        sink = FFmpegEncoderSink(build_ffmpeg_command(params))
        await sink.start()
        await sink.write(payload)
        await sink.close()  # raises EncoderPipeBroken on non-zero exit
    """

    def __init__(
        self,
        argv: list[str],
        *,
        write_timeout: float = 30.0,
        shutdown_timeout: float = 60.0,
        stderr_lines: int = 40,
    ) -> None:
        self.argv = argv
        self._write_timeout = write_timeout
        self._shutdown_timeout = shutdown_timeout
        self._stderr_tail: deque[str] = deque(maxlen=stderr_lines)
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._finished = False

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def start(self) -> None:
        logger.info("[encoder] Starting encoder: %s", shlex.join(self.argv))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise EncoderPipeBroken(f"Encoder executable not found: {self.argv[0]}") from None
        except OSError as e:
            raise EncoderPipeBroken(f"Failed to start encoder {self.argv[0]}: {e}") from e
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def write(self, data: bytes) -> None:
        proc = self._require_process()
        stdin = proc.stdin
        if proc.returncode is not None or stdin.is_closing():
            await self.abort()
            raise self._pipe_broken("Encoder input closed before all frames were written")

        stdin.write(data)
        try:
            await asyncio.wait_for(stdin.drain(), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            await self.abort()
            raise EncoderTimeout(
                f"Encoder did not accept input for {self._write_timeout:.1f}s",
                returncode=self.returncode,
                stderr_tail=self.stderr_tail,
            ) from None
        except ConnectionError:
            await self.abort()
            raise self._pipe_broken("Encoder input pipe broken") from None

    async def close(self) -> None:
        """Close stdin so the encoder can finalize, then wait for it to exit."""
        proc = self._require_process()
        if self._finished:
            return
        proc.stdin.close()
        try:
            await proc.stdin.wait_closed()
        except ConnectionError:
            # Exit status below tells whether the encoder actually failed
            pass

        try:
            await asyncio.wait_for(proc.wait(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            await self.abort()
            raise EncoderTimeout(
                f"Encoder did not finish within {self._shutdown_timeout:.1f}s after input was closed",
                stderr_tail=self.stderr_tail,
            ) from None

        await self._reap()
        if proc.returncode != 0:
            raise self._pipe_broken("Encoder exited with an error")
        logger.info("[encoder] Encoder finished successfully")

    async def abort(self) -> None:
        """Kill the encoder if it is still running. Safe to call more than once."""
        proc = self._process
        if proc is None or self._finished:
            return
        if proc.returncode is None:
            logger.warning("[encoder] Killing encoder process %d", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        await self._reap()

    async def _reap(self) -> None:
        """Wait for process exit and the stderr reader; marks the sink finished."""
        proc = self._require_process()
        await proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
            self._stderr_task = None
        self._finished = True

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("[encoder] %s", text)

    def _pipe_broken(self, message: str) -> EncoderPipeBroken:
        return EncoderPipeBroken(message, returncode=self.returncode, stderr_tail=self.stderr_tail)

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise RuntimeError("start() must be called before using the encoder sink")
        return self._process


async def open_ffmpeg_sink(
    params: EncodeParameters,
    *,
    ffmpeg_path: str = "ffmpeg",
    preset: str = "veryfast",
    crf: int = 23,
    mjpeg_quality: int = 3,
    write_timeout: float = 30.0,
    shutdown_timeout: float = 60.0,
) -> FFmpegEncoderSink:
    """Sink factory: build the ffmpeg argv for params and start the encoder."""
    argv = build_ffmpeg_command(
        params,
        ffmpeg_path=ffmpeg_path,
        preset=preset,
        crf=crf,
        mjpeg_quality=mjpeg_quality,
    )
    sink = FFmpegEncoderSink(argv, write_timeout=write_timeout, shutdown_timeout=shutdown_timeout)
    await sink.start()
    return sink
