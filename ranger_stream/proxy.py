from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
from litestar.response import Response, Stream
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .client import RangedTransport
from .errors import (
    InvalidRangeError,
    ProbeError,
    RangeUnsupportedError,
    RangerError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from litestar import Request
else:  # pragma: no cover
    AsyncIterator = Mapping = Any

LOG = logging.getLogger("ranger_stream.proxy")

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


class RangerSettings(BaseSettings):
    """Configuration for the ranged download proxy."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    upstream: str = Field(
        default="http://127.0.0.1:8080",
        validation_alias=AliasChoices("RANGER_UPSTREAM", "RANGER_UPSTREAM_ENDPOINT"),
    )
    chunk_size: int = Field(
        default=16 * 1024 * 1024,
        validation_alias="RANGER_CHUNK_SIZE",
    )
    workers: int = Field(
        default=8,
        validation_alias="RANGER_WORKERS",
    )
    timeout: float = Field(
        default=60.0,
        validation_alias="RANGER_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="RANGER_READ_TIMEOUT",
    )

    @field_validator("chunk_size", "workers")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            msg = "must be at least 1"
            raise ValueError(msg)
        return value


def load_settings_from_env() -> RangerSettings:
    """Load proxy settings from environment variables.

    Returns:
        RangerSettings instance populated from environment variables.
    """
    return RangerSettings()


class RangedProxy:
    """Serves ``GET`` and ``HEAD`` for an upstream through a ranged client."""

    def __init__(
        self,
        settings: RangerSettings,
        chunk_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._chunk_client = chunk_client
        self._http_client: httpx.AsyncClient | None = None

    async def startup(self) -> None:
        transport = RangedTransport(
            self._chunk_client,
            chunk_size=self._settings.chunk_size,
            workers=self._settings.workers,
        )
        client = httpx.AsyncClient(
            base_url=self._settings.upstream,
            transport=transport,
            timeout=httpx.Timeout(
                self._settings.timeout, read=self._settings.read_timeout
            ),
            trust_env=False,
        )
        await client.__aenter__()
        self._http_client = client
        LOG.info(
            "ranger proxy ready (upstream=%s, chunk_size=%d, workers=%d)",
            self._settings.upstream,
            self._settings.chunk_size,
            self._settings.workers,
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.__aexit__(None, None, None)
            self._http_client = None

    def describe(self) -> dict[str, str | int]:
        """Summarise the ranging configuration for the health endpoint."""
        return {
            "upstream": self._settings.upstream,
            "chunk_size": self._settings.chunk_size,
            "workers": self._settings.workers,
        }

    async def handle(self, request: Request, path: str) -> Response:
        LOG.debug("handle method=%s path=%s", request.method, path)
        if self._http_client is None:
            message = "proxy not initialised"
            raise RuntimeError(message)

        if request.method not in {"GET", "HEAD"}:
            return Response(
                content="Method Not Allowed",
                status_code=405,
                headers={"Allow": "GET, HEAD"},
            )

        upstream_request = self._build_httpx_request(request, path)
        try:
            response = await self._http_client.send(upstream_request, stream=True)
        except RangerError as error:
            return self._from_ranger_error(error, path)
        return self._to_streaming_response(response)

    def _build_httpx_request(self, request: Request, path: str) -> httpx.Request:
        assert self._http_client is not None
        url = path or "/"
        if request.scope.get("query_string"):
            query = request.scope["query_string"].decode("latin-1")
            url = f"{url}?{query}"

        return self._http_client.build_request(
            method=request.method,
            url=url,
            headers=self._prepare_outgoing_headers(request.headers),
        )

    def _prepare_outgoing_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key, value in headers.items():
            lowered = key.lower()
            if lowered in HOP_BY_HOP or lowered == "host":
                continue
            prepared[key] = value
        return prepared

    def _prepare_response_headers(
        self, headers: list[tuple[bytes, bytes]]
    ) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key_bytes, value_bytes in headers:
            key = key_bytes.decode("latin-1")
            value = value_bytes.decode("latin-1")
            if key.lower() in HOP_BY_HOP:
                continue
            prepared[key] = value
        return prepared

    def _to_streaming_response(self, response: httpx.Response) -> Response:
        headers = self._prepare_response_headers(response.headers.raw)

        async def iterator() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_raw():
                    yield chunk
            except RangerError:
                LOG.warning(
                    "aborting response for %s mid-stream",
                    response.request.url,
                    exc_info=True,
                )
                raise
            finally:
                await response.aclose()

        return Stream(
            content=iterator(), status_code=response.status_code, headers=headers
        )

    def _from_ranger_error(self, error: RangerError, path: str) -> Response:
        if isinstance(error, InvalidRangeError):
            status_code = 416
        elif isinstance(error, RangeUnsupportedError | ProbeError):
            status_code = 502
        else:
            status_code = 500
        LOG.warning("request for %s failed (%d): %s", path, status_code, error)
        return Response(content=str(error), status_code=status_code)

    @classmethod
    def from_env(cls) -> RangedProxy:
        """Create a RangedProxy instance from environment variables.

        Returns:
            RangedProxy configured from environment variables.
        """
        return cls(settings=load_settings_from_env())
