"""
Constant frame rate inference from per-frame capture timestamps.

Timestamps are nanoseconds. The rate is the inverse of the mean interval
between consecutive frames, in decode order. Out-of-order and duplicate
timestamps are kept in the mean as-is (no outlier rejection); they are
only counted so the caller can report them.
"""

import logging
from dataclasses import dataclass

from vraw_convert.remuxer.vraw_format import FrameRecord

logger = logging.getLogger(__name__)

NANOSECONDS_PER_SECOND = 1_000_000_000

SOURCE_TIMESTAMP = "timestamp"
SOURCE_RECEIVE_TIMESTAMP = "receive_timestamp"
SOURCE_FALLBACK = "fallback"


@dataclass(slots=True, frozen=True)
class FrameRateEstimate:
    """Result of a frame rate estimation."""

    fps: float
    source: str  # "timestamp", "receive_timestamp" or "fallback"
    frame_count: int
    mean_interval_ns: float = 0.0
    non_monotonic: int = 0  # Intervals that were zero or negative

    @property
    def is_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK


class FrameRateEstimator:
    """
    Accumulates frame timestamps and derives a constant output frame rate.

    Usage:
        estimator = FrameRateEstimator(fallback_fps=30.0)
        async for frame in demuxer.iter_frame_headers():
            estimator.add(frame)
        estimate = estimator.estimate()
    """

    def __init__(self, fallback_fps: float = 30.0) -> None:
        if fallback_fps <= 0:
            raise ValueError(f"Fallback frame rate must be positive, got {fallback_fps}")
        self.fallback_fps = fallback_fps
        self._timestamps: list[int] = []
        self._receive_timestamps: list[int] = []

    def __len__(self) -> int:
        return len(self._timestamps)

    def add(self, frame: FrameRecord) -> None:
        self.add_timestamps(frame.timestamp, frame.receive_timestamp)

    def add_timestamps(self, timestamp: int, receive_timestamp: int) -> None:
        self._timestamps.append(timestamp)
        self._receive_timestamps.append(receive_timestamp)

    def estimate(self) -> FrameRateEstimate:
        """
        Compute the frame rate from the accumulated timestamps.

        Prefers the capture timestamp; falls back to the receive timestamp
        when no frame carries a capture timestamp. Never raises for
        degenerate input: fewer than two frames, or a non-positive mean
        interval, yield the fallback rate.
        """
        count = len(self._timestamps)
        if any(self._timestamps):
            source, values = SOURCE_TIMESTAMP, self._timestamps
        else:
            source, values = SOURCE_RECEIVE_TIMESTAMP, self._receive_timestamps

        if count < 2:
            logger.warning(
                "[frame_rate] %d frame(s) is not enough to measure a frame rate, using %.3f fps",
                count,
                self.fallback_fps,
            )
            return FrameRateEstimate(fps=self.fallback_fps, source=SOURCE_FALLBACK, frame_count=count)

        deltas = [b - a for a, b in zip(values, values[1:])]
        non_monotonic = sum(1 for d in deltas if d <= 0)
        mean_interval = sum(deltas) / len(deltas)

        if non_monotonic:
            logger.warning(
                "[frame_rate] %d of %d %s intervals are zero or negative; included in the mean as-is",
                non_monotonic,
                len(deltas),
                source,
            )

        if mean_interval <= 0:
            logger.warning(
                "[frame_rate] Mean %s interval is %.1fns, cannot derive a rate, using %.3f fps",
                source,
                mean_interval,
                self.fallback_fps,
            )
            return FrameRateEstimate(
                fps=self.fallback_fps,
                source=SOURCE_FALLBACK,
                frame_count=count,
                mean_interval_ns=mean_interval,
                non_monotonic=non_monotonic,
            )

        fps = NANOSECONDS_PER_SECOND / mean_interval
        logger.info(
            "[frame_rate] %.3f fps from %d frames (mean %s interval %.3fms)",
            fps,
            count,
            source,
            mean_interval / 1_000_000,
        )
        return FrameRateEstimate(
            fps=fps,
            source=source,
            frame_count=count,
            mean_interval_ns=mean_interval,
            non_monotonic=non_monotonic,
        )
