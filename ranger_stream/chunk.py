from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .errors import ChunkFetchError, ShortReadError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from .ranges import ByteRange

LOG = logging.getLogger("ranger_stream.chunk")


@runtime_checkable
class Loader(Protocol):
    """Fetches the bytes of exactly one range of a fixed target."""

    async def load(self, byte_range: ByteRange) -> bytes: ...


@dataclass(frozen=True, slots=True)
class FunctionLoader:
    """Adapt a plain ``async (ByteRange) -> bytes`` callable to a Loader."""

    func: Callable[[ByteRange], Awaitable[bytes]]

    async def load(self, byte_range: ByteRange) -> bytes:
        return await self.func(byte_range)


@dataclass(frozen=True, slots=True)
class Chunk:
    """A byte range plus the capability to load it.

    Chunks hold no data. Every call to :meth:`load` performs a new fetch;
    wrap the loader if caching is wanted.
    """

    byte_range: ByteRange
    loader: Loader

    async def load(self) -> bytes:
        try:
            data = await self.loader.load(self.byte_range)
        except ChunkFetchError:
            raise
        except Exception as exc:
            raise ChunkFetchError(self.byte_range) from exc
        if len(data) != self.byte_range.length:
            raise ShortReadError(self.byte_range, len(data))
        LOG.debug(
            "loaded bytes %d-%d", self.byte_range.start, self.byte_range.end
        )
        return data


def build_chunks(ranges: Iterable[ByteRange], loader: Loader) -> list[Chunk]:
    return [Chunk(byte_range=byte_range, loader=loader) for byte_range in ranges]
