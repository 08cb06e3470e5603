"""Concurrent chunk fetching with in-order delivery."""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import TYPE_CHECKING

import anyio

from .errors import ChunkFetchError, FetchCancelledError, InvalidConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from types import TracebackType

    from anyio.abc import TaskGroup

    from .chunk import Chunk
    from .pipe import PipeWriter

LOG = logging.getLogger("ranger_stream.pipeline")


def check_concurrency(max_concurrency: int) -> None:
    if max_concurrency < 1:
        msg = f"concurrency limit must be at least 1, got {max_concurrency}"
        raise InvalidConfigurationError(msg)


class _FetchTask:
    """One in-flight chunk load and its outcome."""

    def __init__(self, position: int, chunk: Chunk):
        self.position = position
        self.chunk = chunk
        self.data: bytes | None = None
        self.error: ChunkFetchError | None = None
        self.done = anyio.Event()

    async def run(self) -> None:
        try:
            self.data = await self.chunk.load()
        except ChunkFetchError as exc:
            self.error = exc
        self.done.set()


class _ReaderGone(Exception):
    pass


async def _commit_in_order(
    task_group: TaskGroup,
    chunks: Sequence[Chunk],
    max_concurrency: int,
    sink: PipeWriter,
) -> ChunkFetchError | None:
    window: deque[_FetchTask] = deque()
    plan: Iterator[tuple[int, Chunk]] = enumerate(chunks)

    def admit() -> None:
        item = next(plan, None)
        if item is None:
            return
        task = _FetchTask(*item)
        window.append(task)
        task_group.start_soon(task.run, name=f"fetch-chunk-{task.position}")

    for _ in range(min(max_concurrency, len(chunks))):
        admit()

    while window:
        task = window.popleft()
        await task.done.wait()
        if task.error is not None:
            LOG.warning(
                "chunk %d (bytes %d-%d) failed: %s",
                task.position,
                task.chunk.byte_range.start,
                task.chunk.byte_range.end,
                task.error,
            )
            return task.error
        assert task.data is not None
        try:
            await sink.write(task.data)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            raise _ReaderGone from exc
        LOG.debug("committed chunk %d", task.position)
        admit()
    return None


async def fetch_ordered(
    chunks: Sequence[Chunk],
    max_concurrency: int,
    sink: PipeWriter,
    *,
    timeout: float | None = None,
) -> None:
    """Load ``chunks`` concurrently and write them to ``sink`` in plan order.

    At most ``max_concurrency`` chunks are in flight or buffered at any time.
    The sink is closed exactly once: normally when every chunk has been
    written, with the first failing chunk's :class:`ChunkFetchError`, or
    with :class:`FetchCancelledError` when the surrounding scope is
    cancelled (the cancellation is re-raised) or ``timeout`` expires.

    Raises:
        InvalidConfigurationError: ``max_concurrency`` is below one. Nothing
            has been fetched and the sink is left untouched.
    """
    check_concurrency(max_concurrency)
    failure: BaseException | None = None
    deadline = math.inf if timeout is None else anyio.current_time() + timeout
    try:
        with anyio.CancelScope(deadline=deadline) as scope:
            async with anyio.create_task_group() as task_group:
                try:
                    failure = await _commit_in_order(
                        task_group, chunks, max_concurrency, sink
                    )
                except _ReaderGone:
                    LOG.debug("reader closed, abandoning remaining chunks")
                task_group.cancel_scope.cancel()
    except anyio.get_cancelled_exc_class():
        sink.close_with_error(FetchCancelledError("chunk fetch cancelled"))
        raise

    if scope.cancelled_caught and failure is None:
        failure = FetchCancelledError(f"chunk fetch timed out after {timeout}s")
    if failure is not None:
        sink.close_with_error(failure)
    else:
        sink.close()


class PipelineRunner:
    """Runs pipelines in the background for as long as it is entered.

    Leaving the runner cancels every pipeline that has not finished; each
    of them closes its sink with :class:`FetchCancelledError`.
    """

    def __init__(self) -> None:
        self._task_group: TaskGroup | None = None

    @property
    def started(self) -> bool:
        return self._task_group is not None

    def start(
        self,
        chunks: Sequence[Chunk],
        max_concurrency: int,
        sink: PipeWriter,
        *,
        timeout: float | None = None,
    ) -> None:
        if self._task_group is None:
            msg = "pipeline runner not started"
            raise RuntimeError(msg)
        check_concurrency(max_concurrency)
        self._task_group.start_soon(
            _run_detached, chunks, max_concurrency, sink, timeout
        )

    async def __aenter__(self) -> PipelineRunner:
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        task_group, self._task_group = self._task_group, None
        assert task_group is not None
        task_group.cancel_scope.cancel()
        # The caller's own exception is left to propagate unwrapped.
        await task_group.__aexit__(None, None, None)


async def _run_detached(
    chunks: Sequence[Chunk],
    max_concurrency: int,
    sink: PipeWriter,
    timeout: float | None,
) -> None:
    try:
        await fetch_ordered(chunks, max_concurrency, sink, timeout=timeout)
    except anyio.get_cancelled_exc_class():
        LOG.debug("background pipeline cancelled")
        raise
