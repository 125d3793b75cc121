import asyncio
import signal

import structlog

from escrow_service.api.app import create_app
from escrow_service.api.metrics_server import BackgroundServer, MetricsServer
from escrow_service.application.engines import build_engines
from escrow_service.application.unit_of_work import UnitOfWork
from escrow_service.config import settings
from escrow_service.infrastructure.database import Database
from escrow_service.infrastructure.gateway import RazorpayGateway
from escrow_service.infrastructure.metrics import EscrowMetrics
from escrow_service.infrastructure.redis_client import RedisClient
from escrow_service.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_escrow_service",
        http_port=settings.http_port,
        metrics_port=settings.metrics_port,
        log_level=settings.log_level,
        metrics_enabled=settings.metrics_enabled,
        scheduler_enabled=settings.scheduler_enabled,
        hold_days=settings.escrow_hold_days,
        commission_percent=str(settings.commission_percent),
    )

    database = Database(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    redis_client = RedisClient(settings.redis_url)
    await redis_client.connect()

    metrics = EscrowMetrics()
    gateway = RazorpayGateway(
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        webhook_secret=settings.gateway_webhook_secret,
        base_url=settings.gateway_base_url,
        timeout_seconds=settings.gateway_timeout_seconds,
        metrics=metrics,
    )
    coordinator = redis_client.coordinator(settings.key_prefix, settings.webhook_marker_ttl_days)
    engines = build_engines(
        lambda: UnitOfWork(database.session_factory()),
        coordinator,
        gateway,
        metrics,
        settings,
    )

    api_server = BackgroundServer(
        create_app(
            engines,
            health_checks={"database": database.health_check, "redis": redis_client.health_check},
        ),
        "http",
        settings.http_host,
        settings.http_port,
    )

    metrics_server: MetricsServer | None = None
    if settings.metrics_enabled:
        metrics_server = MetricsServer(
            host=settings.metrics_host,
            port=settings.metrics_port,
            registry=metrics.registry,
        )
        await metrics_server.start()

    if settings.scheduler_enabled:
        await engines.scheduler.start()

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stopping.set)

    await api_server.start()
    try:
        await stopping.wait()
    finally:
        logger.info("shutting_down")
        await api_server.stop()
        if engines.scheduler.running:
            await engines.scheduler.stop()
        if metrics_server:
            await metrics_server.stop()
        await gateway.close()
        await redis_client.close()
        await database.close()
        logger.info("escrow_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
