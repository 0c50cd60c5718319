import argparse
import asyncio
import logging
import os
import signal
import sys

from pydantic import ValidationError
from tqdm.asyncio import tqdm as tqdm_asyncio

from vraw_convert.configs import Settings, settings
from vraw_convert.remuxer.convert_pipeline import ConversionPipeline, ConversionResult
from vraw_convert.remuxer.encoder import OutputContainer
from vraw_convert.remuxer.errors import ConversionError, UnsupportedContainer
from vraw_convert.remuxer.media_source import is_url, open_source

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_STOPPED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vraw-convert",
        description="Convert a .vraw capture recording to MP4, MJPEG or multipart JPEG.",
    )
    parser.add_argument("input", help="Path or http(s) URL of the .vraw recording")
    parser.add_argument(
        "output",
        nargs="?",
        help="Destination .mp4, .mjpeg or .mpjpeg file (default: <input>_<timestamp>.mp4 next to the input)",
    )
    parser.add_argument("--framerate", type=float, help="Output frame rate (default: estimated from timestamps)")
    parser.add_argument("--preset", help=f"x264 preset for MP4 output (default: {settings.preset})")
    parser.add_argument("--crf", type=int, help=f"x264 CRF for MP4 output (default: {settings.crf})")
    parser.add_argument("--ffmpeg", dest="ffmpeg_path", help="ffmpeg executable to use")
    parser.add_argument(
        "--keep-partial",
        dest="keep_partial_output",
        action="store_true",
        default=None,
        help="Keep the output file when the conversion fails",
    )
    parser.add_argument("--verify", dest="verify_output", action="store_true", default=None, help="Probe the output")
    parser.add_argument("--log-level", help=f"Logging level (default: {settings.log_level})")
    parser.add_argument(
        "--no-progress",
        dest="enable_progress",
        action="store_false",
        default=None,
        help="Do not show a progress bar",
    )
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings = settings) -> Settings:
    """
    Apply the command line overrides on top of the environment settings.

    The merged values are validated again, so out-of-range overrides fail
    here rather than in the encoder.

    Raises:
        ValidationError: an override is outside the allowed range.
    """
    overrides = {
        name: getattr(args, name)
        for name in (
            "framerate",
            "preset",
            "crf",
            "ffmpeg_path",
            "keep_partial_output",
            "verify_output",
            "log_level",
            "enable_progress",
        )
        if getattr(args, name) is not None
    }
    return Settings.model_validate({**base.model_dump(), **overrides})


def _describe_error(err: dict) -> str:
    option = str(err["loc"][0]).replace("_", "-") if err["loc"] else "settings"
    return f"--{option}: {err['msg']}"


def validate_paths(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Usage errors exit with status 2 through parser.error()."""
    if not is_url(args.input) and not os.path.isfile(args.input):
        parser.error(f"input file not found: {args.input}")
    if args.framerate is not None and args.framerate <= 0:
        parser.error("--framerate must be positive")
    if args.output is None:
        return
    try:
        OutputContainer.from_path(args.output)
    except UnsupportedContainer as e:
        parser.error(str(e))
    directory = os.path.dirname(os.path.abspath(args.output))
    if not os.path.isdir(directory):
        parser.error(f"destination directory does not exist: {directory}")


async def run_conversion(args: argparse.Namespace, run_settings: Settings) -> ConversionResult:
    source = open_source(args.input, chunk_size=run_settings.read_chunk_size)
    progress = None

    def on_frame(count: int) -> None:
        nonlocal progress
        if progress is None:
            scan = pipeline.scan_result
            progress = tqdm_asyncio(
                total=scan.records if scan is not None else None,
                unit="frame",
                desc="Converting",
            )
        progress.update(1)

    pipeline = ConversionPipeline(
        source,
        args.output,
        settings=run_settings,
        on_frame=on_frame if run_settings.enable_progress else None,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    try:
        return await pipeline.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        if progress is not None:
            progress.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    validate_paths(parser, args)
    try:
        run_settings = settings_from_args(args)
    except ValidationError as e:
        parser.error("; ".join(_describe_error(err) for err in e.errors()))

    logging.basicConfig(
        level=run_settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        result = asyncio.run(run_conversion(args, run_settings))
    except ConversionError as e:
        logger.exception("Conversion of %s failed: %s", args.input, e)
        return EXIT_FAILED

    if result.stopped:
        logger.warning("Conversion stopped after %d frames: %s", result.frames_written, result.output_path)
        return EXIT_STOPPED
    print(result.output_path)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
