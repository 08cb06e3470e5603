from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator

LOG = logging.getLogger("ranger_stream.multiplexer")


@dataclass
class _Segment:
    sequence: int
    stream: bytes | AsyncIterable[bytes]


async def _iter_segment(segment: _Segment) -> AsyncGenerator[bytes, None]:
    if isinstance(segment.stream, bytes | bytearray | memoryview):
        if segment.stream:
            yield bytes(segment.stream)
        return
    async for data in segment.stream:
        if data:
            yield data


class OrderedStreamMultiplexer:
    """Concatenate sub-streams from many producers into one byte stream.

    Producers call :meth:`enqueue` from any task; sub-streams are read back
    whole, one after another, in the order their ``enqueue`` calls were
    admitted. Once ``capacity`` sub-streams are waiting, ``enqueue`` blocks
    until the consumer moves on. After :meth:`finish` the consumer sees end
    of stream as soon as everything enqueued has been read.
    """

    def __init__(self, capacity: int = 0):
        if capacity < 0:
            msg = f"capacity must not be negative, got {capacity}"
            raise ValueError(msg)
        self._send, self._receive = anyio.create_memory_object_stream[_Segment](
            capacity
        )
        self._admission = anyio.Lock()
        self._sequence = 0
        self._current: AsyncGenerator[bytes, None] | None = None
        self._pending = b""

    async def enqueue(self, stream: bytes | AsyncIterable[bytes]) -> int:
        """Queue ``stream`` and return its sequence number."""
        async with self._admission:
            segment = _Segment(self._sequence, stream)
            await self._send.send(segment)
            self._sequence += 1
        LOG.debug("enqueued segment %d", segment.sequence)
        return segment.sequence

    def finish(self) -> None:
        self._send.close()

    async def receive(self) -> bytes:
        """Return the next piece of data, or ``b""`` once finished and drained."""
        if self._pending:
            data, self._pending = self._pending, b""
            return data
        while True:
            if self._current is None:
                try:
                    segment = await self._receive.receive()
                except anyio.EndOfStream:
                    return b""
                self._current = _iter_segment(segment)
            try:
                return await anext(self._current)
            except StopAsyncIteration:
                self._current = None

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            return b"".join([data async for data in self])
        if size == 0:
            return b""
        data = await self.receive()
        if len(data) > size:
            data, self._pending = data[:size], data[size:]
        return data

    async def aclose(self) -> None:
        self._send.close()
        current, self._current = self._current, None
        if current is not None:
            await current.aclose()
        self._pending = b""
        await self._receive.aclose()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        data = await self.receive()
        if not data:
            raise StopAsyncIteration
        return data
