"""
.vraw recording remuxer package.

Provides a pure Python streaming parser for .vraw capture recordings and
the pipeline that re-encodes their frames through ffmpeg:

- vraw_format: Binary layout constants, record types and capture formats
- byte_cursor: Async little-endian cursor over a chunked byte stream
- vraw_demuxer: Streaming .vraw record decoder (state machine)
- frame_rate: Constant frame rate estimation from frame timestamps
- frame_dispatcher: Decoded frames -> encoder input, configured once
- encoder: ffmpeg argv builder and FrameSink implementations
- media_source: RecordingSource protocol (local file, HTTP, in-memory)
- output_probe: PyAV-based check of the encoded output
- convert_pipeline: Two-pass conversion orchestrator
- errors: ConversionError taxonomy
"""
