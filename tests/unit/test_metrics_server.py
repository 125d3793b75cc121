"""Unit tests for the metrics app and background uvicorn servers."""

import asyncio
import contextlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from escrow_service.api.metrics_server import BackgroundServer, MetricsServer, create_metrics_app
from escrow_service.infrastructure.metrics import EscrowMetrics


class TestCreateMetricsApp:
    """Tests for create_metrics_app factory function."""

    def test_disables_docs(self) -> None:
        """Test factory disables documentation endpoints."""
        app = create_metrics_app()

        assert app.title == "Escrow Service Metrics"
        assert app.docs_url is None
        assert app.redoc_url is None
        assert app.openapi_url is None

    def test_has_metrics_and_health_endpoints(self) -> None:
        app = create_metrics_app()

        routes = [route.path for route in app.routes]
        assert "/metrics" in routes
        assert "/health" in routes


class TestMetricsEndpoint:
    """Tests for /metrics endpoint."""

    def test_metrics_returns_prometheus_format(self) -> None:
        client = TestClient(create_metrics_app(CollectorRegistry()))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    def test_metrics_exposes_given_registry(self) -> None:
        """Only collectors bound to the app's registry are exposed."""
        metrics = EscrowMetrics(registry=CollectorRegistry())
        metrics.escrow_releases.labels(trigger="auto").inc()
        client = TestClient(create_metrics_app(metrics.registry))

        response = client.get("/metrics")

        assert 'escrow_releases_total{trigger="auto"} 1.0' in response.text
        assert "escrow_webhook_events_total" in response.text
        assert "outbox_pending_events" in response.text

    def test_health_returns_healthy(self) -> None:
        client = TestClient(create_metrics_app())

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestMetricsServer:
    """Tests for MetricsServer and BackgroundServer."""

    def test_init_with_default_values(self) -> None:
        server = MetricsServer()

        assert server._host == "0.0.0.0"
        assert server._port == 9090

    @pytest.mark.asyncio
    async def test_start_creates_server(self) -> None:
        """Test start creates a quiet uvicorn server."""
        server = MetricsServer(host="127.0.0.1", port=19090)

        with (
            patch("escrow_service.api.metrics_server.uvicorn.Server") as mock_server_class,
            patch("escrow_service.api.metrics_server.uvicorn.Config") as mock_config,
        ):
            mock_server = MagicMock()
            mock_server.serve = AsyncMock()
            mock_server_class.return_value = mock_server

            await server.start()
            await server.wait()

            config_kwargs = mock_config.call_args.kwargs
            assert config_kwargs["host"] == "127.0.0.1"
            assert config_kwargs["port"] == 19090
            assert config_kwargs["log_level"] == "warning"
            assert config_kwargs["access_log"] is False
            mock_server.serve.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_logs_with_server_name(self) -> None:
        server = BackgroundServer(create_metrics_app(), "api", "127.0.0.1", 18000)

        with (
            patch("escrow_service.api.metrics_server.uvicorn.Server") as mock_server_class,
            patch("escrow_service.api.metrics_server.logger") as mock_logger,
        ):
            mock_server_class.return_value.serve = AsyncMock()

            await server.start()
            await server.wait()

            mock_logger.info.assert_called_once_with("api_server_started", host="127.0.0.1", port=18000)

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self) -> None:
        server = MetricsServer()

        with patch("escrow_service.api.metrics_server.logger") as mock_logger:
            await server.stop()

            mock_logger.info.assert_called_once_with("metrics_server_stopped")

    @pytest.mark.asyncio
    async def test_stop_sets_should_exit_and_waits(self) -> None:
        server = MetricsServer()
        completed = False

        async def slow_task() -> None:
            nonlocal completed
            await asyncio.sleep(0.05)
            completed = True

        mock_uvicorn_server = MagicMock()
        server._server = mock_uvicorn_server
        server._task = asyncio.create_task(slow_task())

        await server.stop()

        assert mock_uvicorn_server.should_exit is True
        assert completed is True

    @pytest.mark.asyncio
    async def test_stop_cancels_on_timeout(self) -> None:
        """Test stop cancels a server that does not exit in time."""
        server = MetricsServer()
        server._server = MagicMock()
        server._task = asyncio.create_task(asyncio.sleep(100))

        with patch("escrow_service.api.metrics_server.asyncio.wait_for", side_effect=TimeoutError):
            await server.stop()

        with contextlib.suppress(asyncio.CancelledError):
            await server._task
        assert server._task.cancelled()
