from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream


@dataclass
class _PipeState:
    error: BaseException | None = None
    closed: bool = False


class PipeWriter:
    """Write side of a pipe. Exactly one terminal call takes effect."""

    def __init__(self, stream: MemoryObjectSendStream[bytes], state: _PipeState):
        self._stream = stream
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.closed

    async def write(self, data: bytes) -> int:
        if data:
            await self._stream.send(data)
        return len(data)

    def close(self) -> None:
        if self._state.closed:
            return
        self._state.closed = True
        self._stream.close()

    def close_with_error(self, error: BaseException) -> None:
        """Close the pipe so that the reader raises ``error`` at the end."""
        if self._state.closed:
            return
        self._state.error = error
        self.close()


class PipeReader:
    """Read side of a pipe.

    Data written before the writer closed is always delivered first. Once
    it is drained, reads return ``b""`` after a plain close, or raise the
    error passed to :meth:`PipeWriter.close_with_error`.
    """

    def __init__(
        self, stream: MemoryObjectReceiveStream[bytes], state: _PipeState
    ) -> None:
        self._stream = stream
        self._state = state
        self._pending = b""

    async def receive(self) -> bytes:
        """Return the next piece of data, or ``b""`` at end of stream."""
        if self._pending:
            data, self._pending = self._pending, b""
            return data
        try:
            return await self._stream.receive()
        except anyio.EndOfStream:
            pass
        # Raised outside the handler so the error keeps its own cause.
        if self._state.error is not None:
            raise self._state.error
        return b""

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            return b"".join([piece async for piece in self])
        if size == 0:
            return b""
        data = await self.receive()
        if len(data) > size:
            data, self._pending = data[:size], data[size:]
        return data

    async def aclose(self) -> None:
        self._pending = b""
        await self._stream.aclose()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        data = await self.receive()
        if not data:
            raise StopAsyncIteration
        return data

    async def __aenter__(self) -> PipeReader:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def create_pipe(max_buffer_size: float = 0) -> tuple[PipeReader, PipeWriter]:
    """Create a single-producer, single-consumer byte pipe.

    ``max_buffer_size`` counts buffered writes, not bytes; zero makes every
    write wait for the reader.
    """
    send, receive = anyio.create_memory_object_stream[bytes](max_buffer_size)
    state = _PipeState()
    return PipeReader(receive, state), PipeWriter(send, state)
