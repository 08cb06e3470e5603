from __future__ import annotations

import os
import random
from typing import TYPE_CHECKING

import anyio
import httpx
import pytest

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

    from ranger_stream import ByteRange


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_data(size: int, seed: int = 42) -> bytes:
    return random.Random(seed).randbytes(size)


class MemoryLoader:
    """Serves ranges of in-memory content and records what was asked for.

    ``fail_at`` holds range start offsets that raise instead of loading,
    ``delays`` maps start offsets to a sleep before returning.
    """

    def __init__(
        self,
        content: bytes,
        *,
        fail_at: set[int] | None = None,
        delays: dict[int, float] | None = None,
    ):
        self.content = content
        self.fail_at = fail_at or set()
        self.delays = delays or {}
        self.calls: list[ByteRange] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def load(self, byte_range: ByteRange) -> bytes:
        self.calls.append(byte_range)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await anyio.sleep(self.delays.get(byte_range.start, 0))
            if byte_range.start in self.fail_at:
                msg = f"injected failure at {byte_range.start}"
                raise OSError(msg)
            return self.content[byte_range.start : byte_range.end + 1]
        finally:
            self.in_flight -= 1


def random_delays(
    starts: list[int], seed: int = 7, ceiling: float = 0.01
) -> dict[int, float]:
    rnd = random.Random(seed)
    return {start: rnd.uniform(0, ceiling) for start in starts}


def range_handler(
    content: bytes,
    *,
    accept_ranges: bool = True,
    requests: list[httpx.Request] | None = None,
    fail_at: set[int] | None = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build an ``httpx.MockTransport`` handler serving ``content`` by range."""
    fail_at = fail_at or set()

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        headers = {"Accept-Ranges": "bytes"} if accept_ranges else {}
        if request.method == "HEAD":
            headers["Content-Length"] = str(len(content))
            return httpx.Response(200, headers=headers)

        range_header = request.headers.get("range")
        if not range_header:
            return httpx.Response(200, headers=headers, content=content)

        start_str, _, end_str = range_header.removeprefix("bytes=").partition("-")
        start = int(start_str)
        end = min(int(end_str) if end_str else len(content) - 1, len(content) - 1)
        if start in fail_at:
            return httpx.Response(500, content=b"upstream exploded")
        headers["Content-Range"] = f"bytes {start}-{end}/{len(content)}"
        return httpx.Response(206, headers=headers, content=content[start : end + 1])

    return handler


@pytest.fixture
def content() -> bytes:
    return make_data(1024 * 10)


@pytest.fixture
def recorded_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def chunk_client_factory(
    recorded_requests: list[httpx.Request],
) -> Callable[..., httpx.AsyncClient]:
    def factory(content: bytes, **kwargs) -> httpx.AsyncClient:
        handler = range_handler(content, requests=recorded_requests, **kwargs)
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def ranger_env() -> Generator[dict[str, str]]:
    """Set up environment variables for the proxy settings."""
    env_vars = {
        "RANGER_UPSTREAM": "http://files.example.test",
        "RANGER_CHUNK_SIZE": "4096",
        "RANGER_WORKERS": "12",
    }

    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value

    yield env_vars

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
