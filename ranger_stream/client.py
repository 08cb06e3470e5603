"""httpx integration: fetch a ranged resource through a chunking transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from .chunk import build_chunks
from .errors import ProbeError, RangeUnsupportedError
from .pipe import create_pipe
from .pipeline import PipelineRunner, check_concurrency
from .ranges import check_chunk_size, parse_range, plan_fixed_chunks

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping
    from types import TracebackType

    from .chunk import Chunk
    from .pipe import PipeReader
    from .ranges import ByteRange

LOG = logging.getLogger("ranger_stream.client")


@dataclass(frozen=True)
class HttpLoader:
    """Loads byte ranges of ``url`` with ``GET`` and a ``Range`` header."""

    client: httpx.AsyncClient
    url: httpx.URL | str
    headers: Mapping[str, str] = field(default_factory=dict)

    async def load(self, byte_range: ByteRange) -> bytes:
        headers = {**self.headers, "Range": byte_range.header()}
        response = await self.client.get(self.url, headers=headers)
        response.raise_for_status()
        if response.status_code != httpx.codes.PARTIAL_CONTENT:
            msg = (
                f"expected 206 for {byte_range.header()}, "
                f"got {response.status_code}"
            )
            raise RangeUnsupportedError(msg)
        return response.content


async def probe(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Issue an unranged ``HEAD`` for ``request`` and validate the result.

    Raises:
        RangeUnsupportedError: the target does not accept byte ranges.
        ProbeError: the probe failed or returned no usable length.
    """
    headers = _outgoing_headers(request.headers)
    try:
        response = await client.head(request.url, headers=headers)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        msg = f"probe of {request.url} failed: {exc}"
        raise ProbeError(msg) from exc

    accept_ranges = response.headers.get("accept-ranges", "")
    if accept_ranges.strip().lower() != "bytes":
        msg = f"{request.url} does not support ranges, Accept-Ranges: {accept_ranges!r}"
        raise RangeUnsupportedError(msg)

    raw_length = response.headers.get("content-length")
    try:
        content_length = int(raw_length) if raw_length is not None else -1
    except ValueError as exc:
        msg = f"unable to parse Content-Length {raw_length!r}"
        raise ProbeError(msg) from exc
    if content_length < 0:
        msg = f"missing Content-Length for {request.url}"
        raise ProbeError(msg)
    return response


def _outgoing_headers(headers: httpx.Headers) -> dict[str, str]:
    skipped = {"range", "content-length", "transfer-encoding", "accept-encoding"}
    prepared = {k: v for k, v in headers.items() if k.lower() not in skipped}
    # Lengths and offsets refer to the identity encoding.
    prepared["Accept-Encoding"] = "identity"
    return prepared


class PipeByteStream(httpx.AsyncByteStream):
    def __init__(self, reader: PipeReader):
        self._reader = reader

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for data in self._reader:
            yield data

    async def aclose(self) -> None:
        await self._reader.aclose()


class RangedTransport(httpx.AsyncBaseTransport):
    """A transport that downloads each response body in parallel chunks.

    A ``HEAD`` probe learns the resource length; the body is then fetched
    as ``chunk_size`` pieces through ``chunk_client`` with at most
    ``workers`` in flight, and streamed back in order. A requested
    ``Range`` is served as a single chunk. ``HEAD`` requests are forwarded
    as they are.

    The transport must be entered before use; ``httpx.AsyncClient`` does
    so on ``async with``.
    """

    def __init__(
        self,
        chunk_client: httpx.AsyncClient | None = None,
        *,
        chunk_size: int,
        workers: int,
        timeout: float | None = None,
    ):
        check_chunk_size(chunk_size)
        check_concurrency(workers)
        self.chunk_size = chunk_size
        self.workers = workers
        self.timeout = timeout
        self._chunk_client = chunk_client
        self._owns_chunk_client = chunk_client is None
        self._runner: PipelineRunner | None = None

    async def __aenter__(self) -> RangedTransport:
        if self._chunk_client is None:
            self._chunk_client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, read=300.0)
            )
        runner = PipelineRunner()
        await runner.__aenter__()
        self._runner = runner
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: TracebackType | None = None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.__aexit__(None, None, None)
        if self._owns_chunk_client and self._chunk_client is not None:
            await self._chunk_client.aclose()
            self._chunk_client = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self._runner is None or self._chunk_client is None:
            msg = "ranged transport not started, use it inside 'async with'"
            raise RuntimeError(msg)
        client = self._chunk_client

        if request.method == "HEAD":
            LOG.debug("forwarding HEAD %s without ranging", request.url)
            response = await client.send(request)
            return httpx.Response(
                status_code=response.status_code,
                headers=response.headers,
                content=response.content,
                request=request,
            )

        probe_response = await probe(client, request)
        total_length = int(probe_response.headers["content-length"])
        requested = parse_range(request.headers.get("range"), total_length)

        headers = httpx.Headers(probe_response.headers)
        headers.pop("content-range", None)
        status_code = probe_response.status_code
        if requested:
            byte_range = requested[0]
            ranges = [byte_range]
            headers["content-range"] = byte_range.content_range(total_length)
            headers["content-length"] = str(byte_range.length)
            status_code = httpx.codes.PARTIAL_CONTENT
        else:
            ranges = plan_fixed_chunks(self.chunk_size, 0, total_length - 1)
            headers["content-length"] = str(total_length)

        loader = HttpLoader(client, request.url, _outgoing_headers(request.headers))
        chunks: list[Chunk] = build_chunks(ranges, loader)
        reader, writer = create_pipe()
        self._runner.start(chunks, self.workers, writer, timeout=self.timeout)
        LOG.debug(
            "fetching %s in %d chunks with %d workers",
            request.url,
            len(chunks),
            self.workers,
        )
        return httpx.Response(
            status_code=status_code,
            headers=headers,
            stream=PipeByteStream(reader),
            request=request,
        )


def new_client(
    chunk_client: httpx.AsyncClient | None = None,
    *,
    chunk_size: int,
    workers: int,
    timeout: float | None = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Return an ``httpx.AsyncClient`` whose bodies are fetched in chunks.

    ``chunk_client`` performs the probe and chunk requests; without one the
    transport creates and owns a plain client. Remaining keyword arguments
    go to ``httpx.AsyncClient``.
    """
    transport = RangedTransport(
        chunk_client, chunk_size=chunk_size, workers=workers, timeout=timeout
    )
    return httpx.AsyncClient(transport=transport, **kwargs)

