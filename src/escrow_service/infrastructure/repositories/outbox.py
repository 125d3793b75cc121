import json
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_service.domain.models import OutboxEvent
from escrow_service.infrastructure.repositories.payment import load_json


OUTBOX_COLUMNS = """
    id, aggregate_type, aggregate_id, event_type, payload, created_at,
    published_at, retry_count, last_error, next_attempt_at, dead_lettered_at
"""

# Neither delivered nor parked on the dead letter topic.
PENDING = "published_at IS NULL AND dead_lettered_at IS NULL"


def _row_to_event(row: Any) -> OutboxEvent:
    return OutboxEvent(
        id=row.id,
        aggregate_type=row.aggregate_type,
        aggregate_id=row.aggregate_id,
        event_type=row.event_type,
        payload=load_json(row.payload),
        created_at=row.created_at,
        published_at=row.published_at,
        retry_count=row.retry_count,
        last_error=row.last_error,
        next_attempt_at=row.next_attempt_at,
        dead_lettered_at=row.dead_lettered_at,
    )


class OutboxRepository:
    """Domain events waiting to be relayed to the bus.

    Rows are written by the engines inside their own transaction and drained
    by ``OutboxProcessor``. A failed publish pushes ``next_attempt_at`` into the
    future; an event that keeps failing is dead-lettered and leaves the queue.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> OutboxEvent:
        event = OutboxEvent.create(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
        )
        await self._session.execute(
            text("""
                INSERT INTO outbox (id, aggregate_type, aggregate_id, event_type, payload, created_at)
                VALUES (:id, :aggregate_type, :aggregate_id, :event_type, :payload, :created_at)
            """),
            {
                "id": event.id,
                "aggregate_type": event.aggregate_type,
                "aggregate_id": event.aggregate_id,
                "event_type": event.event_type,
                "payload": json.dumps(event.payload),
                "created_at": event.created_at,
            },
        )
        return event

    async def get_unpublished(self, limit: int = 100) -> list[OutboxEvent]:
        """Pending events whose backoff has elapsed, oldest first.

        Rows are locked with SKIP LOCKED so several relays can drain the table
        without publishing the same event twice.
        """
        result = await self._session.execute(
            text(f"""
                SELECT {OUTBOX_COLUMNS}
                FROM outbox
                WHERE {PENDING}
                  AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                ORDER BY created_at
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            """),
            {"limit": limit},
        )
        return [_row_to_event(row) for row in result.fetchall()]

    async def mark_published(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self._session.execute(
            text("UPDATE outbox SET published_at = NOW(), last_error = NULL WHERE id = ANY(:ids)"),
            {"ids": event_ids},
        )

    async def record_failure(self, event_id: str, error: str, next_attempt_at: datetime) -> None:
        await self._session.execute(
            text("""
                UPDATE outbox
                SET retry_count = retry_count + 1,
                    last_error = :error,
                    next_attempt_at = :next_attempt_at
                WHERE id = :id
            """),
            {"id": event_id, "error": error[:1000], "next_attempt_at": next_attempt_at},
        )

    async def mark_dead_lettered(self, event_id: str) -> None:
        await self._session.execute(
            text("UPDATE outbox SET dead_lettered_at = NOW() WHERE id = :id"),
            {"id": event_id},
        )

    async def count_unpublished(self) -> int:
        result = await self._session.execute(text(f"SELECT COUNT(*) FROM outbox WHERE {PENDING}"))
        return int(result.scalar_one())
