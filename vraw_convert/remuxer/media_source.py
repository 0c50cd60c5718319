"""
Recording source protocol for the conversion pipeline.

Decouples the demuxer from where the .vraw bytes come from. The pipeline
streams a recording twice (metadata pass, then encode pass), so every
source must be able to restart from the beginning on each stream() call.
"""

import logging
import os
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import aiofiles
import aiohttp

from vraw_convert.remuxer.errors import SourceError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


def is_url(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https")


def name_from_url(url: str) -> str:
    """Derive a file name from a URL path ('' when the path has none)."""
    try:
        return os.path.basename(unquote(urlparse(url).path))
    except ValueError:
        return ""


@runtime_checkable
class RecordingSource(Protocol):
    """
    Protocol for streaming recording bytes.

    Implementations must provide:
    - stream(): async iterator of bytes from offset/limit, restartable
    - file_size: total size in bytes (0 when unknown)
    - name: file name used for diagnostics and output naming
    """

    @property
    def file_size(self) -> int:
        ...

    @property
    def name(self) -> str:
        ...

    async def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        """
        Stream bytes from the source.

        Args:
            offset: Byte offset to start from.
            limit: Number of bytes to read. None = read to end.

        Yields:
            Chunks of bytes.
        """
        ...


class LocalFileSource:
    """RecordingSource backed by a local file, read with aiofiles."""

    def __init__(self, path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._path = path
        self._chunk_size = chunk_size
        self._file_size = os.path.getsize(path)

    @property
    def path(self) -> str:
        return self._path

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def name(self) -> str:
        return os.path.basename(self._path)

    async def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        remaining = limit
        try:
            f = await aiofiles.open(self._path, "rb")
        except OSError as e:
            raise SourceError(f"Cannot open {self._path}: {e}") from e
        async with f:
            if offset:
                await f.seek(offset)
            while remaining is None or remaining > 0:
                size = self._chunk_size if remaining is None else min(self._chunk_size, remaining)
                try:
                    chunk = await f.read(size)
                except OSError as e:
                    raise SourceError(f"Error reading {self._path}: {e}") from e
                if not chunk:
                    return
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk


class BytesSource:
    """RecordingSource over an in-memory buffer."""

    def __init__(self, data: bytes, name: str = "memory.vraw", chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._data = data
        self._name = name
        self._chunk_size = chunk_size
        self.streams_opened = 0

    @property
    def file_size(self) -> int:
        return len(self._data)

    @property
    def name(self) -> str:
        return self._name

    async def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        self.streams_opened += 1
        end = len(self._data) if limit is None else min(len(self._data), offset + limit)
        for pos in range(offset, end, self._chunk_size):
            yield self._data[pos : min(pos + self._chunk_size, end)]


class HTTPRecordingSource:
    """RecordingSource backed by HTTP GET (with byte ranges when offset/limit are set)."""

    def __init__(
        self,
        url: str,
        headers: dict | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 60.0,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._chunk_size = chunk_size
        self._timeout = aiohttp.ClientTimeout(total=None, sock_read=timeout)
        self._file_size = 0

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def name(self) -> str:
        return name_from_url(self._url) or "recording.vraw"

    async def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        headers = dict(self._headers)

        if offset > 0 or limit is not None:
            end = ""
            if limit is not None:
                end = str(offset + limit - 1)
            headers["range"] = f"bytes={offset}-{end}"

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(self._url, headers=headers, allow_redirects=True) as resp:
                    resp.raise_for_status()
                    if resp.content_length and not self._file_size and offset == 0 and limit is None:
                        self._file_size = resp.content_length
                    logger.debug("[media_source] GET %s -> %d (%s bytes)", self._url, resp.status, resp.content_length)
                    async for chunk in resp.content.iter_chunked(self._chunk_size):
                        yield chunk
        except aiohttp.ClientResponseError as e:
            raise SourceError(f"HTTP error {e.status} while fetching {self._url}") from e
        except aiohttp.ClientError as e:
            raise SourceError(f"Error fetching {self._url}: {e}") from e


def open_source(location: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> RecordingSource:
    """Pick the RecordingSource implementation for a path or http(s) URL."""
    if is_url(location):
        return HTTPRecordingSource(location, chunk_size=chunk_size)
    return LocalFileSource(location, chunk_size=chunk_size)
