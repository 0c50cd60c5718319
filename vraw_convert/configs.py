from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"  # The logging level to use.
    ffmpeg_path: str = "ffmpeg"  # The encoder executable.
    framerate: float | None = Field(
        None, gt=0, description="Output frame rate. When unset it is estimated from the frame timestamps."
    )
    fallback_framerate: float = Field(30.0, gt=0, description="Frame rate used when it cannot be estimated.")
    preset: str = "veryfast"  # The x264 preset for MP4 output.
    crf: int = Field(23, ge=0, le=51, description="The x264 CRF value for MP4 output.")
    mjpeg_quality: int = Field(3, ge=2, le=31, description="The MJPEG qscale for MJPEG output.")
    encoder_timeout: float = Field(
        30.0, gt=0, description="Seconds the encoder may stall on its input before the conversion fails."
    )
    encoder_shutdown_timeout: float = Field(
        60.0, gt=0, description="Seconds allowed for the encoder to finalize the output after the last frame."
    )
    queue_size: int = Field(8, ge=1, description="Decoded frames buffered between the demuxer and the encoder.")
    read_chunk_size: int = Field(1024 * 1024, ge=4096, description="Read size for the recording source.")
    verify_metadata_footer: bool = True  # Fail when a generic metadata footer size differs from its header.
    verify_metadata_magic: bool = True  # Fail when a generic metadata header/footer magic is wrong.
    strip_placement_footer: bool = False  # Remove the video placement footer from video payloads.
    keep_partial_output: bool = False  # Keep the output file when a conversion fails.
    verify_output: bool = False  # Probe the finished output and compare its frame count.
    enable_progress: bool = True  # Whether to show a progress bar on the command line.

    class Config:
        env_file = ".env"
        env_prefix = "VRAW_"
        extra = "ignore"


settings = Settings()
