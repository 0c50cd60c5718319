import av
import pytest

from vraw_convert.remuxer.output_probe import probe_output


def _write_video(path: str, frames: int, width: int = 64, height: int = 48) -> None:
    with av.open(path, "w") as container:
        stream = container.add_stream("mpeg4", rate=25)
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        for i in range(frames):
            frame = av.VideoFrame(width, height, "yuv420p")
            frame.pts = i
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)


def test_probe_reports_stream_properties(tmp_path):
    path = str(tmp_path / "clip.mp4")
    _write_video(path, frames=5)

    summary = probe_output(path)

    assert summary.codec_name == "mpeg4"
    assert (summary.width, summary.height) == (64, 48)
    assert summary.frames == 5
    assert summary.fps == pytest.approx(25.0)
    assert summary.duration_seconds == pytest.approx(0.2, abs=0.05)


def test_probe_rejects_non_media(tmp_path):
    path = tmp_path / "notes.mp4"
    path.write_bytes(b"not a video file" * 10)

    with pytest.raises(av.error.FFmpegError):
        probe_output(str(path))
