import asyncio
import json
import random
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from escrow_service.application import events
from escrow_service.config import settings
from escrow_service.domain.models import OutboxEvent
from escrow_service.infrastructure.database import Database
from escrow_service.infrastructure.metrics import EscrowMetrics
from escrow_service.infrastructure.repositories.outbox import OutboxRepository


logger = structlog.get_logger()

TOPIC_BY_AGGREGATE = {
    events.PAYMENT_AGGREGATE: "payments",
    events.DISPUTE_AGGREGATE: "disputes",
    events.WEBHOOK_AGGREGATE: "webhook-failures",
}


def topic_for(prefix: str, event: OutboxEvent) -> str:
    return f"{prefix}.{TOPIC_BY_AGGREGATE.get(event.aggregate_type, event.aggregate_type.lower())}"


def partition_key(event: OutboxEvent) -> str:
    """Key on the payment so its payment and dispute events stay in order on one partition."""
    payment_id = event.payload.get("payment_id")
    return payment_id if isinstance(payment_id, str) and payment_id else event.aggregate_id


def event_envelope(event: OutboxEvent) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": event.aggregate_id,
        "occurred_at": event.created_at.isoformat(),
        "payload": event.payload,
    }


class OutboxProcessor:
    """
    Relays escrow domain events from the outbox table to Kafka/Redpanda.

    Payment events go to ``<prefix>.payments``, dispute events to
    ``<prefix>.disputes`` and unprocessable webhooks to
    ``<prefix>.webhook-failures``. A failed publish is retried after an
    exponential backoff stored on the row; after ``max_retries`` failures the
    event is parked on ``<prefix>.dlq``. Repeated failures of whole batches
    (database or broker gone) trip a breaker that stops the relay.
    """

    MAX_CONSECUTIVE_FAILURES = 10

    def __init__(
        self,
        database: Database,
        metrics: EscrowMetrics | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self._database = database
        self._metrics = metrics
        self._batch_size = batch_size or settings.outbox_batch_size
        self._poll_interval = poll_interval or settings.outbox_poll_interval_seconds
        self._max_retries = max_retries or settings.outbox_max_retries
        self._base_delay = base_delay or settings.outbox_base_delay_seconds
        self._max_delay = max_delay or settings.outbox_max_delay_seconds
        self._topic_prefix = settings.kafka_topic_prefix
        self._producer: AIOKafkaProducer | None = None
        self._running = False
        self._consecutive_failures = 0

    @property
    def dlq_topic(self) -> str:
        return f"{self._topic_prefix}.dlq"

    async def start(self) -> None:
        """Open the producer and drain the outbox until stopped or the breaker trips."""
        self._producer = AIOKafkaProducer(
            bootstrap_servers=settings.redpanda_brokers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()
        self._running = True
        self._consecutive_failures = 0
        logger.info("outbox_processor_started", batch_size=self._batch_size, topic_prefix=self._topic_prefix)

        try:
            while self._running:
                try:
                    drained = await self.drain_once()
                except Exception as e:
                    self._consecutive_failures += 1
                    logger.error(
                        "outbox_drain_failed",
                        error=str(e),
                        consecutive_failures=self._consecutive_failures,
                        exc_info=True,
                    )
                    if self._consecutive_failures >= self.MAX_CONSECUTIVE_FAILURES:
                        logger.critical("outbox_circuit_open", consecutive_failures=self._consecutive_failures)
                        break
                    await asyncio.sleep(self._poll_interval)
                    continue

                self._consecutive_failures = 0
                if drained < self._batch_size:
                    await asyncio.sleep(self._poll_interval)
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._running = False
        if self._producer:
            await self._producer.stop()
            self._producer = None
        logger.info("outbox_processor_stopped")

    async def drain_once(self) -> int:
        """Publish one batch of due events and commit the bookkeeping. Returns the batch size."""
        if self._producer is None:
            raise RuntimeError("Outbox producer not started. Call start() first.")

        async with self._database.session() as session:
            outbox = OutboxRepository(session)
            batch = await outbox.get_unpublished(self._batch_size)

            published: list[str] = []
            for event in batch:
                error = await self._publish(event)
                if error is None:
                    published.append(event.id)
                elif event.retry_count + 1 >= self._max_retries:
                    await self._dead_letter(event, error, outbox)
                else:
                    await self._schedule_retry(event, error, outbox)

            await outbox.mark_published(published)
            await session.commit()

            if self._metrics is not None:
                self._metrics.outbox_pending.set(await outbox.count_unpublished())
            if published:
                logger.info("outbox_batch_published", published=len(published), batch=len(batch))
            return len(batch)

    async def _publish(self, event: OutboxEvent) -> str | None:
        """Send ``event`` to its topic. Returns the failure reason, or None once the broker acked it."""
        assert self._producer is not None
        topic = topic_for(self._topic_prefix, event)
        try:
            await self._producer.send_and_wait(topic=topic, key=partition_key(event), value=event_envelope(event))
        except KafkaError as e:
            logger.warning(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                topic=topic,
                attempt=event.retry_count + 1,
                error=str(e),
            )
            if self._metrics is not None:
                self._metrics.outbox_failed.labels(event_type=event.event_type).inc()
            return str(e) or type(e).__name__

        logger.debug("outbox_event_published", event_id=event.id, event_type=event.event_type, topic=topic)
        if self._metrics is not None:
            self._metrics.outbox_published.labels(event_type=event.event_type).inc()
        return None

    async def _schedule_retry(self, event: OutboxEvent, error: str, outbox: OutboxRepository) -> None:
        delay = self._calculate_backoff_delay(event.retry_count)
        await outbox.record_failure(event.id, error, datetime.now(UTC) + timedelta(seconds=delay))
        logger.info("outbox_event_retry_scheduled", event_id=event.id, attempt=event.retry_count + 1, delay=delay)

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff with up to 10% jitter, capped at ``max_delay``."""
        delay: float = min(self._base_delay * (2**retry_count), self._max_delay)
        return delay + random.uniform(0, delay * 0.1)

    async def _dead_letter(self, event: OutboxEvent, error: str, outbox: OutboxRepository) -> None:
        assert self._producer is not None
        try:
            await self._producer.send_and_wait(
                topic=self.dlq_topic,
                key=partition_key(event),
                value={
                    **event_envelope(event),
                    "attempts": event.retry_count + 1,
                    "last_error": error,
                    "dead_lettered_at": datetime.now(UTC).isoformat(),
                },
            )
        except KafkaError as e:
            # Leave the row pending; the next drain tries the dead letter topic again.
            logger.error("outbox_dead_letter_failed", event_id=event.id, error=str(e))
            await self._schedule_retry(event, error, outbox)
            return

        await outbox.mark_dead_lettered(event.id)
        logger.error(
            "outbox_event_dead_lettered",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
            attempts=event.retry_count + 1,
            last_error=error,
        )
        if self._metrics is not None:
            self._metrics.outbox_dead_lettered.labels(event_type=event.event_type).inc()
