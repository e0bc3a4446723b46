"""Random-access byte sources for part and chunk uploads."""

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Union


class ByteSource(ABC):
    """A sized, sliceable source of bytes.

    Parts are read independently by offset, so several uploads can pull from
    the same source concurrently.
    """

    @property
    @abstractmethod
    def size(self) -> int:
        """Total number of bytes."""

    @abstractmethod
    async def read_range(self, offset: int, length: int) -> bytes:
        """Read up to ``length`` bytes starting at ``offset``."""

    async def iter_chunks(self, chunk_size: int, offset: int = 0, length: int | None = None) -> AsyncIterator[bytes]:
        """Yield a byte range in ``chunk_size`` pieces."""
        end = self.size if length is None else min(self.size, offset + length)
        position = offset
        while position < end:
            chunk = await self.read_range(position, min(chunk_size, end - position))
            if not chunk:
                break
            position += len(chunk)
            yield chunk


class BytesSource(ByteSource):
    """In-memory source, mainly for small payloads and tests."""

    def __init__(self, data: bytes):
        self._data = memoryview(bytes(data))

    @property
    def size(self) -> int:
        return len(self._data)

    async def read_range(self, offset: int, length: int) -> bytes:
        return bytes(self._data[offset:offset + length])


class FileSource(ByteSource):
    """File on disk; every read opens its own handle in a worker thread."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._size = self.path.stat().st_size

    @property
    def size(self) -> int:
        return self._size

    def _read(self, offset: int, length: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(offset)
            return f.read(length)

    async def read_range(self, offset: int, length: int) -> bytes:
        return await asyncio.to_thread(self._read, offset, length)


class StreamSource(ByteSource):
    """Seekable binary file object shared behind a lock."""

    def __init__(self, fileobj: BinaryIO, size: int | None = None):
        self._file = fileobj
        if size is None:
            current = fileobj.tell()
            size = fileobj.seek(0, os.SEEK_END)
            fileobj.seek(current)
        self._size = size
        self._lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return self._size

    def _read(self, offset: int, length: int) -> bytes:
        self._file.seek(offset)
        return self._file.read(length)

    async def read_range(self, offset: int, length: int) -> bytes:
        async with self._lock:
            return await asyncio.to_thread(self._read, offset, length)


def as_byte_source(obj: Union[ByteSource, bytes, bytearray, memoryview, str, Path, BinaryIO]) -> ByteSource:
    """Wrap bytes, a path, or a seekable file object as a ByteSource."""
    if isinstance(obj, ByteSource):
        return obj
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return BytesSource(bytes(obj))
    if isinstance(obj, (str, Path)):
        return FileSource(obj)
    if hasattr(obj, "read") and hasattr(obj, "seek"):
        return StreamSource(obj)
    raise TypeError(f"Unsupported byte source: {type(obj).__name__}")
