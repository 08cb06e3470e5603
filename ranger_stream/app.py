from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .proxy import RangedProxy

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="ranger_stream", prefix="ranger_stream")

# Headers a browser needs to see to make sense of partial responses.
EXPOSED_HEADERS = ["Accept-Ranges", "Content-Length", "Content-Range", "ETag"]


def create_app(proxy: RangedProxy | None = None) -> Litestar:
    """Create the ASGI app serving the upstream through ranged downloads.

    Every path except ``/health`` and ``/metrics`` is handed to ``proxy``,
    which is built from the environment when not given.
    """
    ranged = proxy if proxy is not None else RangedProxy.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str | int]:
        return {"status": "ok", **ranged.describe()}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def ranged_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            path = f"/{path}"
        response = await ranged.handle(request, path)
        await response.to_asgi_response(None, request)(scope, receive, send)

    @asynccontextmanager
    async def lifespan(app: Litestar) -> AsyncGenerator[None, None]:
        # The transport's task group must nest inside the app's lifespan.
        await ranged.startup()
        try:
            yield
        finally:
            await ranged.shutdown()

    return Litestar(
        route_handlers=[health, ranged_handler, PrometheusController],
        lifespan=[lifespan],
        cors_config=CORSConfig(
            allow_origins=["*"],
            allow_methods=["GET", "HEAD"],
            allow_headers=["Range", "If-Range", "Authorization"],
            expose_headers=EXPOSED_HEADERS,
        ),
        middleware=[prometheus_config.middleware],
    )


app = create_app()
