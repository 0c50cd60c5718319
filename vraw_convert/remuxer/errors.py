"""
Error taxonomy for .vraw conversion.

Every failure raised while decoding or encoding derives from
``ConversionError`` so the pipeline and the CLI can report it with the byte
offset and record index where it happened.
"""


class ConversionError(Exception):
    """Base exception for all conversion failures."""

    def __init__(
        self,
        message: str,
        *,
        offset: int | None = None,
        record_index: int | None = None,
    ) -> None:
        self.message = message
        self.offset = offset
        self.record_index = record_index
        super().__init__(message)

    def __str__(self) -> str:
        where = []
        if self.record_index is not None:
            where.append(f"record {self.record_index}")
        if self.offset is not None:
            where.append(f"offset {self.offset} (0x{self.offset:X})")
        if where:
            return f"{self.message} [{', '.join(where)}]"
        return self.message


class UnexpectedEof(ConversionError):
    """The stream ended in the middle of a record."""

    def __init__(self, message: str, *, requested: int = 0, available: int = 0, **kwargs) -> None:
        self.requested = requested
        self.available = available
        super().__init__(message, **kwargs)


class CorruptStream(ConversionError):
    """A magic number or size field did not match what the layout requires."""


class UnsupportedFormat(ConversionError):
    """Unknown/invalid capture format, or a format/resolution change mid-stream."""


class UnsupportedContainer(ConversionError):
    """The requested output extension has no known encoder configuration."""


class EncoderError(ConversionError):
    """The external encoder failed."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr_tail: str = "",
        **kwargs,
    ) -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        text = super().__str__()
        if self.returncode is not None:
            text += f" (exit status {self.returncode})"
        if self.stderr_tail:
            text += f"\nencoder output:\n{self.stderr_tail}"
        return text


class EncoderPipeBroken(EncoderError):
    """The encoder's input channel closed early or the encoder exited with an error."""


class EncoderTimeout(EncoderError):
    """The encoder stopped consuming input for longer than the configured bound."""


class SourceError(ConversionError):
    """The recording could not be read from its source."""
