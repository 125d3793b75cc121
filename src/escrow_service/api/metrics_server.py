import asyncio
import contextlib

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest


logger = structlog.get_logger()


def create_metrics_app(registry: CollectorRegistry | None = None) -> FastAPI:
    """Create FastAPI application exposing ``registry`` in Prometheus text format."""
    registry = registry if registry is not None else REGISTRY
    app = FastAPI(
        title="Escrow Service Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(
            content=generate_latest(registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    return app


class BackgroundServer:
    """Runs a FastAPI app under uvicorn as a background task."""

    def __init__(self, app: FastAPI, name: str, host: str, port: int) -> None:
        self._app = app
        self._name = name
        self._host = host
        self._port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        self._task = asyncio.create_task(self._server.serve())
        logger.info(f"{self._name}_server_started", host=self._host, port=self._port)

    async def wait(self) -> None:
        if self._task:
            await self._task

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        logger.info(f"{self._name}_server_stopped")


class MetricsServer(BackgroundServer):
    """Async metrics server using uvicorn."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 9090,
        registry: CollectorRegistry | None = None,
    ) -> None:
        super().__init__(create_metrics_app(registry), "metrics", host, port)
