"""Tests for the ranged httpx transport against an in-memory range server."""

from __future__ import annotations

import httpx
import pytest
from conftest import range_handler
from ranger_stream import (
    ByteRange,
    ChunkFetchError,
    HttpLoader,
    InvalidConfigurationError,
    InvalidRangeError,
    MultiRangeUnsupportedError,
    ProbeError,
    RangedTransport,
    RangeUnsupportedError,
    new_client,
    probe,
)

URL = "http://files.example.test/blob.bin"


async def fetch(client: httpx.AsyncClient, range_header: str | None = None):
    headers = {"Range": range_header} if range_header else None
    async with client.stream("GET", URL, headers=headers) as response:
        body = await response.aread()
    return response, body


class TestRangedTransport:
    @pytest.mark.anyio
    @pytest.mark.parametrize(
        ("range_header", "chunk_size", "workers", "start", "end", "content_range"),
        [
            ("bytes=42-", 1024, 100, 42, 10240, "bytes 42-10239/10240"),
            ("bytes=42-83", 5, 10, 42, 84, "bytes 42-83/10240"),
            (None, 1, 1, 0, 10240, None),
            (None, 3 * 1024, 5, 0, 10240, None),
            (None, 2048, 8, 0, 10240, None),
            (None, 16 * 1024 * 1024, 100, 0, 10240, None),
            (None, 1024, 1, 0, 10240, None),
        ],
        ids=[
            "start at 42",
            "small range",
            "1 byte chunk",
            "3KiB chunks",
            "2KiB chunks",
            "16MiB chunks",
            "single chunk buffer",
        ],
    )
    async def test_do(
        self,
        content,
        chunk_client_factory,
        range_header,
        chunk_size,
        workers,
        start,
        end,
        content_range,
    ):
        async with (
            chunk_client_factory(content) as chunk_client,
            new_client(chunk_client, chunk_size=chunk_size, workers=workers) as client,
        ):
            response, body = await fetch(client, range_header)

        assert int(response.headers["content-length"]) == end - start
        assert response.headers.get("content-range") == content_range
        assert body == content[start:end]
        assert response.status_code == (206 if range_header else 200)

    @pytest.mark.anyio
    async def test_full_fetch_issues_one_probe_and_ranged_gets(
        self, content, chunk_client_factory, recorded_requests
    ):
        async with (
            chunk_client_factory(content) as chunk_client,
            new_client(chunk_client, chunk_size=1024, workers=4) as client,
        ):
            _, body = await fetch(client)

        assert body == content
        methods = [request.method for request in recorded_requests]
        assert methods == ["HEAD"] + ["GET"] * 10
        assert "range" not in recorded_requests[0].headers
        ranges = sorted(
            request.headers["range"] for request in recorded_requests[1:]
        )
        expected = sorted(f"bytes={i}-{i + 1023}" for i in range(0, 10240, 1024))
        assert ranges == expected

    @pytest.mark.anyio
    async def test_sub_range_is_one_chunk(
        self, content, chunk_client_factory, recorded_requests
    ):
        async with (
            chunk_client_factory(content) as chunk_client,
            new_client(chunk_client, chunk_size=16, workers=4) as client,
        ):
            await fetch(client, "bytes=100-999")

        gets = [r for r in recorded_requests if r.method == "GET"]
        assert [r.headers["range"] for r in gets] == ["bytes=100-999"]

    @pytest.mark.anyio
    async def test_head_bypasses_chunking(
        self, content, chunk_client_factory, recorded_requests
    ):
        async with (
            chunk_client_factory(content) as chunk_client,
            new_client(chunk_client, chunk_size=1024, workers=4) as client,
        ):
            response = await client.head(URL)

        assert response.status_code == 200
        assert response.headers["content-length"] == str(len(content))
        assert [r.method for r in recorded_requests] == ["HEAD"]

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        ("range_header", "error"),
        [
            ("bytes=100-200,300-400", MultiRangeUnsupportedError),
            ("bytes=100-50", InvalidRangeError),
        ],
    )
    async def test_invalid_ranges(
        self, content, chunk_client_factory, recorded_requests, range_header, error
    ):
        async with (
            chunk_client_factory(content) as chunk_client,
            new_client(chunk_client, chunk_size=1024, workers=4) as client,
        ):
            with pytest.raises(error):
                await fetch(client, range_header)

        assert all(r.method == "HEAD" for r in recorded_requests)

    @pytest.mark.parametrize(
        ("chunk_size", "workers"), [(0, 100), (1024, 0), (-1, 1)]
    )
    def test_invalid_configuration(self, chunk_size, workers):
        with pytest.raises(InvalidConfigurationError):
            RangedTransport(chunk_size=chunk_size, workers=workers)

    @pytest.mark.anyio
    async def test_range_unsupported(self, content, chunk_client_factory):
        async with (
            chunk_client_factory(content, accept_ranges=False) as chunk_client,
            new_client(chunk_client, chunk_size=1024, workers=4) as client,
        ):
            with pytest.raises(RangeUnsupportedError):
                await fetch(client)

    @pytest.mark.anyio
    async def test_chunk_failure_surfaces_while_reading(
        self, content, chunk_client_factory
    ):
        received = bytearray()
        async with (
            chunk_client_factory(content, fail_at={4096}) as chunk_client,
            new_client(chunk_client, chunk_size=1024, workers=3) as client,
        ):
            async with client.stream("GET", URL) as response:
                assert response.status_code == 200
                with pytest.raises(ChunkFetchError) as exc_info:
                    async for data in response.aiter_raw():
                        received += data

        assert exc_info.value.byte_range == ByteRange(4096, 5119)
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)
        assert received == content[:4096]

    @pytest.mark.anyio
    async def test_requires_entered_transport(self):
        transport = RangedTransport(chunk_size=1024, workers=2)
        request = httpx.Request("GET", URL)

        with pytest.raises(RuntimeError, match="not started"):
            await transport.handle_async_request(request)


class TestProbe:
    @pytest.mark.anyio
    async def test_missing_content_length(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, headers={"Accept-Ranges": "bytes", "Content-Length": "nope"}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProbeError, match="Content-Length"):
                await probe(client, httpx.Request("GET", URL))

    @pytest.mark.anyio
    async def test_failed_probe(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProbeError):
                await probe(client, httpx.Request("GET", URL))

    @pytest.mark.anyio
    async def test_probe_drops_range_header(self, content, recorded_requests):
        handler = range_handler(content, requests=recorded_requests)
        request = httpx.Request("GET", URL, headers={"Range": "bytes=0-1"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await probe(client, request)

        assert response.headers["content-length"] == str(len(content))
        assert "range" not in recorded_requests[0].headers


class TestHttpLoader:
    @pytest.mark.anyio
    async def test_loads_range(self, content):
        handler = range_handler(content)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            loader = HttpLoader(client, URL)
            assert await loader.load(ByteRange(10, 19)) == content[10:20]

    @pytest.mark.anyio
    async def test_rejects_full_response(self, content):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=content)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(RangeUnsupportedError):
                await HttpLoader(client, URL).load(ByteRange(0, 9))
