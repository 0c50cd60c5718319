"""
Post-conversion check of the encoded output using PyAV.

Opens the finished container and reports what a player would see: codec,
resolution, frame count and duration. Used to confirm that the encoder
wrote as many frames as were dispatched.
"""

import logging
from dataclasses import dataclass

import av

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OutputSummary:
    """Video stream properties of an encoded file."""

    codec_name: str
    width: int
    height: int
    frames: int
    duration_seconds: float = 0.0
    fps: float = 0.0
    container_format: str = ""


def probe_output(path: str, count_frames: bool = True) -> OutputSummary:
    """
    Probe the first video stream of a media file.

    Args:
        path: File to open.
        count_frames: Demux every packet when the container does not
            store a frame count (MJPEG/multipart JPEG streams never do).

    Raises:
        ValueError: if the file has no video stream.
        av.error.FFmpegError: if the file cannot be opened.
    """
    with av.open(path) as container:
        if not container.streams.video:
            raise ValueError(f"{path} has no video stream")
        stream = container.streams.video[0]
        ctx = stream.codec_context

        frames = stream.frames or 0
        if frames == 0 and count_frames:
            frames = sum(1 for packet in container.demux(stream) if packet.size)

        duration = 0.0
        if stream.duration is not None and stream.time_base is not None:
            duration = float(stream.duration * stream.time_base)
        elif container.duration is not None:
            duration = container.duration / av.time_base

        fps = float(stream.average_rate) if stream.average_rate else 0.0

        summary = OutputSummary(
            codec_name=ctx.name,
            width=ctx.width,
            height=ctx.height,
            frames=frames,
            duration_seconds=duration,
            fps=fps,
            container_format=container.format.name,
        )

    logger.debug("[output_probe] %s: %s", path, summary)
    return summary
