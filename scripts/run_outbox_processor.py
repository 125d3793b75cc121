#!/usr/bin/env python3
"""Outbox processor entrypoint script.

Runs the OutboxProcessor as a standalone background worker that polls
the outbox table and publishes escrow events to Kafka/Redpanda.
"""
import asyncio
import signal

import structlog

from escrow_service.api.metrics_server import MetricsServer
from escrow_service.config import settings
from escrow_service.infrastructure.database import Database
from escrow_service.infrastructure.event_publisher import OutboxProcessor
from escrow_service.infrastructure.metrics import EscrowMetrics
from escrow_service.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "outbox_processor_starting",
        database_url=settings.database_url.split("@")[-1],
        redpanda_brokers=settings.redpanda_brokers,
        batch_size=settings.outbox_batch_size,
        poll_interval=settings.outbox_poll_interval_seconds,
    )

    database = Database(settings.database_url)
    metrics = EscrowMetrics()
    processor = OutboxProcessor(database=database, metrics=metrics)

    metrics_server: MetricsServer | None = None
    if settings.metrics_enabled:
        metrics_server = MetricsServer(
            host=settings.metrics_host,
            port=settings.metrics_port,
            registry=metrics.registry,
        )
        await metrics_server.start()

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    processor_task = asyncio.create_task(processor.start())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        # The processor returns on its own once its circuit breaker opens.
        done, _ = await asyncio.wait({processor_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        if processor_task in done and not shutdown_event.is_set():
            logger.critical("outbox_processor_exited", error=repr(processor_task.exception()))
    finally:
        shutdown_task.cancel()
        logger.info("initiating_graceful_shutdown")
        await processor.stop()
        processor_task.cancel()
        await asyncio.gather(processor_task, return_exceptions=True)
        if metrics_server:
            await metrics_server.stop()
        await database.close()
        logger.info("outbox_processor_shutdown_complete")

    if not shutdown_event.is_set():
        raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
