from __future__ import annotations

import io
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from .chunk import build_chunks
from .pipe import create_pipe
from .pipeline import PipelineRunner, check_concurrency

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .chunk import Chunk, Loader
    from .pipe import PipeReader
    from .ranges import Ranger

LOG = logging.getLogger("ranger_stream.source")


class RangedSource:
    """A remote resource of known length, split into lazily loaded chunks.

    The chunk list is immutable, so :meth:`read_at`, any number of
    :class:`RangedReader` views and preloading readers can be used
    concurrently.
    """

    def __init__(self, length: int, loader: Loader, ranger: Ranger):
        self._length = length
        self._ranger = ranger
        self._chunks: tuple[Chunk, ...] = tuple(
            build_chunks(ranger.ranges(length), loader)
        )

    @property
    def size(self) -> int:
        return self._length

    @property
    def chunks(self) -> tuple[Chunk, ...]:
        return self._chunks

    async def read_at(self, buffer: bytearray | memoryview, offset: int) -> int:
        """Fill ``buffer`` with the bytes starting at ``offset``.

        Chunks are loaded on demand and never cached, so reading the same
        offset twice fetches twice. Returns the number of bytes copied; a
        count shorter than the buffer means the end of the resource was
        reached, and ``0`` means ``offset`` is at or past the end.
        """
        if offset < 0:
            msg = f"negative offset {offset}"
            raise ValueError(msg)
        view = memoryview(buffer).cast("B")
        size = len(view)
        copied = 0
        while copied < size:
            position = offset + copied
            if position >= self._length:
                break
            chunk = self._chunks[self._ranger.index(position)]
            data = await chunk.load()
            start = position - chunk.byte_range.start
            count = min(size - copied, len(data) - start)
            view[copied : copied + count] = data[start : start + count]
            copied += count
        return copied

    def reader(self) -> RangedReader:
        """Return a new sequential, seekable view starting at offset zero."""
        return RangedReader(self)

    @asynccontextmanager
    async def preloading_reader(self, workers: int) -> AsyncIterator[PipeReader]:
        """Stream the whole resource with up to ``workers`` chunks in flight.

        Every chunk is loaded eagerly and delivered in order. Leaving the
        context abandons whatever has not been delivered yet.
        """
        check_concurrency(workers)
        reader, writer = create_pipe()
        async with PipelineRunner() as runner:
            runner.start(self._chunks, workers, writer)
            LOG.debug(
                "preloading %d chunks with %d workers", len(self._chunks), workers
            )
            try:
                yield reader
            finally:
                await reader.aclose()


class RangedReader:
    """Cursor over a :class:`RangedSource`, bounded to ``[0, size)``."""

    def __init__(self, source: RangedSource):
        self._source = source
        self._position = 0

    @property
    def size(self) -> int:
        return self._source.size

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._position + offset
        elif whence == io.SEEK_END:
            position = self.size + offset
        else:
            msg = f"invalid whence {whence}"
            raise ValueError(msg)
        if position < 0:
            msg = f"negative seek position {position}"
            raise ValueError(msg)
        self._position = position
        return position

    async def readinto(self, buffer: bytearray | memoryview) -> int:
        count = await self._source.read_at(buffer, self._position)
        self._position += count
        return count

    async def read(self, size: int = -1) -> bytes:
        remaining = max(self.size - self._position, 0)
        if size < 0 or size > remaining:
            size = remaining
        buffer = bytearray(size)
        count = await self.readinto(buffer)
        return bytes(buffer[:count])
