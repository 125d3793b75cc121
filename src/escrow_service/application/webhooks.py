from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from escrow_service.application import events
from escrow_service.application.concurrency import retry_on_conflict
from escrow_service.application.escrow import EscrowEngine
from escrow_service.application.ports import IdempotencyCoordinator
from escrow_service.application.refunds import apply_refund
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.domain.exceptions import (
    AmountMismatchError,
    InvalidStateError,
    InvalidTransitionError,
    ResourceNotFoundError,
)
from escrow_service.domain.models import ActorType, Transaction, TransactionType
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.gateway import from_minor_units, to_minor_units
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()

GATEWAY_ACTOR = "gateway"

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
REFUND_CREATED = "refund.created"


class GatewayPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str | None = None
    amount: int
    currency: str = "INR"
    method: str | None = None
    status: str | None = None
    error_description: str | None = None


class GatewayRefundEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_id: str
    amount: int
    currency: str = "INR"


class _PaymentWrapper(BaseModel):
    entity: GatewayPaymentEntity


class _RefundWrapper(BaseModel):
    entity: GatewayRefundEntity


class WebhookPayload(BaseModel):
    """The ``payload`` object of a gateway webhook body."""

    model_config = ConfigDict(extra="ignore")

    payment: _PaymentWrapper | None = None
    refund: _RefundWrapper | None = None

    def payment_entity(self) -> GatewayPaymentEntity:
        if self.payment is None:
            raise InvalidStateError("Webhook payload has no payment entity")
        return self.payment.entity

    def refund_entity(self) -> GatewayRefundEntity:
        if self.refund is None:
            raise InvalidStateError("Webhook payload has no refund entity")
        return self.refund.entity


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of ingesting one event. The gateway is always told it was accepted."""

    event_type: str
    event_id: str | None
    result: str
    accepted: bool = True


class WebhookIngestor:
    """
    Single entry point for gateway facts (capture, failure, refund).

    Events are deduplicated twice: by event id, then by the fact they carry
    (``captured:<pay_id>``, ``failed:<pay_id>``, ``refund:<refund_id>``), so a
    redelivery under a new event id is still applied once. Failures while
    applying a fact are logged, counted and written to the outbox; they are
    never surfaced to the gateway.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        coordinator: IdempotencyCoordinator,
        escrow: EscrowEngine,
        metrics: EscrowMetrics,
        marker_ttl_seconds: int = 7 * 24 * 3600,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self._coordinator = coordinator
        self._escrow = escrow
        self._metrics = metrics
        self._marker_ttl = marker_ttl_seconds
        self._retry_attempts = conflict_retry_attempts
        self._handlers: dict[str, Callable[[WebhookPayload, structlog.stdlib.BoundLogger], Awaitable[str]]] = {
            PAYMENT_CAPTURED: self._handle_captured,
            PAYMENT_FAILED: self._handle_failed,
            REFUND_CREATED: self._handle_refund_created,
        }

    async def ingest(self, event_type: str, event_id: str | None, payload: dict[str, Any]) -> WebhookOutcome:
        log = logger.bind(event_type=event_type, event_id=event_id)

        # CoordinatorUnavailableError propagates here: nothing has been applied
        # yet and the gateway will redeliver. Past this point the event id is
        # claimed, so a failing fact marker ends up in WebhookProcessingFailed.
        if event_id and not await self._coordinator.mark_processed(f"event:{event_id}", self._marker_ttl):
            log.info("webhook_duplicate_event")
            return self._outcome(event_type, event_id, "duplicate")

        handler = self._handlers.get(event_type)
        if handler is None:
            log.info("webhook_event_ignored")
            return self._outcome(event_type, event_id, "ignored")

        try:
            result = await handler(WebhookPayload.model_validate(payload), log)
        except Exception as e:
            log.error(
                "webhook_processing_failed",
                error=str(e),
                error_code=getattr(e, "error_code", type(e).__name__),
                exc_info=True,
            )
            await self._record_failure(event_type, event_id, e, log)
            return self._outcome(event_type, event_id, "failed")

        log.info("webhook_processed", result=result)
        return self._outcome(event_type, event_id, result)

    def _outcome(self, event_type: str, event_id: str | None, result: str) -> WebhookOutcome:
        self._metrics.webhook_events.labels(event_type=event_type, outcome=result).inc()
        return WebhookOutcome(event_type=event_type, event_id=event_id, result=result)

    async def _first_time(self, fact_key: str) -> bool:
        return await self._coordinator.mark_processed(fact_key, self._marker_ttl)

    async def _handle_captured(self, payload: WebhookPayload, log: structlog.stdlib.BoundLogger) -> str:
        entity = payload.payment_entity()
        log = log.bind(gateway_payment_id=entity.id, gateway_order_id=entity.order_id)

        if not await self._first_time(f"captured:{entity.id}"):
            log.info("capture_already_processed")
            return "duplicate"
        if not entity.order_id:
            raise InvalidStateError(f"Captured payment {entity.id} carries no order id")

        return await retry_on_conflict(lambda: self._apply_capture(entity, log), self._retry_attempts)

    async def _apply_capture(self, entity: GatewayPaymentEntity, log: structlog.stdlib.BoundLogger) -> str:
        now = datetime.now(UTC)
        async with self._uow_factory() as uow:
            payment = await uow.payments.get_by_gateway_order_id(entity.order_id or "")
            if payment is None:
                raise ResourceNotFoundError("Payment", f"gateway_order_id={entity.order_id}")
            log = log.bind(payment_id=payment.id)

            if payment.status not in (PaymentStatus.CREATED, PaymentStatus.AUTHORIZED):
                log.info("capture_already_applied", status=payment.status.value)
                return "duplicate"

            start = len(payment.status_history)
            expected_minor = to_minor_units(payment.amount)
            currency_matches = entity.currency.upper() == payment.currency.upper()

            if expected_minor != entity.amount or not currency_matches:
                mismatch = AmountMismatchError(payment.id, expected_minor, entity.amount)
                reason = str(mismatch)
                if not currency_matches:
                    reason += f" ({entity.currency} vs {payment.currency})"
                payment.gateway_payment_id = entity.id
                payment.transition_to(PaymentStatus.FAILED, reason, GATEWAY_ACTOR, ActorType.WEBHOOK, now)

                await uow.payments.update(payment)
                await uow.outbox.add(
                    aggregate_type=events.PAYMENT_AGGREGATE,
                    aggregate_id=payment.id,
                    event_type=events.PAYMENT_FAILED,
                    payload=events.payment_payload(
                        payment,
                        reason=reason,
                        error_code=mismatch.error_code,
                        expected_minor=mismatch.expected_minor,
                        actual_minor=mismatch.actual_minor,
                        gateway_payment_id=entity.id,
                    ),
                )
                await uow.commit()

                self._metrics.amount_mismatches.inc()
                self._metrics.record_transitions(payment.status_history[start:])
                log.error(
                    "amount_mismatch",
                    error=reason,
                    error_code=mismatch.error_code,
                    expected_minor=mismatch.expected_minor,
                    actual_minor=mismatch.actual_minor,
                    expected_currency=payment.currency,
                    actual_currency=entity.currency,
                )
                return "amount_mismatch"

            payment.gateway_payment_id = entity.id
            payment.payment_method = entity.method
            if payment.status == PaymentStatus.CREATED:
                payment.transition_to(
                    PaymentStatus.AUTHORIZED,
                    "Payment authorized by gateway",
                    GATEWAY_ACTOR,
                    ActorType.WEBHOOK,
                    now,
                )
            payment.transition_to(
                PaymentStatus.CAPTURED,
                "Funds captured by gateway",
                GATEWAY_ACTOR,
                ActorType.WEBHOOK,
                now,
            )
            capture = Transaction.create(
                payment,
                TransactionType.CAPTURE,
                payment.amount,
                description="Payment captured",
                external_reference=entity.id,
            )
            held = self._escrow.hold_in_escrow(payment, GATEWAY_ACTOR, ActorType.WEBHOOK, now=now)

            await uow.payments.update(payment)
            await uow.transactions.add_many([capture, *held])
            await uow.outbox.add(
                aggregate_type=events.PAYMENT_AGGREGATE,
                aggregate_id=payment.id,
                event_type=events.PAYMENT_CAPTURED,
                payload=events.payment_payload(
                    payment,
                    gateway_payment_id=entity.id,
                    release_eligible_at=payment.escrow.release_eligible_at.isoformat()
                    if payment.escrow.release_eligible_at
                    else None,
                ),
            )
            await uow.commit()

        self._metrics.record_transitions(payment.status_history[start:])
        log.info(
            "payment_captured_in_escrow",
            amount=str(payment.amount),
            platform_commission=str(payment.platform_commission),
            release_eligible_at=payment.escrow.release_eligible_at,
        )
        return "processed"

    async def _handle_failed(self, payload: WebhookPayload, log: structlog.stdlib.BoundLogger) -> str:
        entity = payload.payment_entity()
        log = log.bind(gateway_payment_id=entity.id, gateway_order_id=entity.order_id)

        if not await self._first_time(f"failed:{entity.id}"):
            log.info("failure_already_processed")
            return "duplicate"

        return await retry_on_conflict(lambda: self._apply_failure(entity, log), self._retry_attempts)

    async def _apply_failure(self, entity: GatewayPaymentEntity, log: structlog.stdlib.BoundLogger) -> str:
        now = datetime.now(UTC)
        async with self._uow_factory() as uow:
            payment = None
            if entity.order_id:
                payment = await uow.payments.get_by_gateway_order_id(entity.order_id)
            if payment is None:
                payment = await uow.payments.get_by_gateway_payment_id(entity.id)
            if payment is None:
                raise ResourceNotFoundError("Payment", f"gateway_payment_id={entity.id}")
            log = log.bind(payment_id=payment.id)

            reason = entity.error_description or "Payment failed at gateway"
            try:
                change = payment.transition_to(PaymentStatus.FAILED, reason, GATEWAY_ACTOR, ActorType.WEBHOOK, now)
            except InvalidTransitionError:
                log.warning("payment_failure_ignored", status=payment.status.value, reason=reason)
                return "ignored"

            payment.gateway_payment_id = payment.gateway_payment_id or entity.id
            await uow.payments.update(payment)
            await uow.outbox.add(
                aggregate_type=events.PAYMENT_AGGREGATE,
                aggregate_id=payment.id,
                event_type=events.PAYMENT_FAILED,
                payload=events.payment_payload(payment, reason=reason, gateway_payment_id=entity.id),
            )
            await uow.commit()

        self._metrics.record_transitions([change])
        log.info("payment_failed", reason=reason)
        return "processed"

    async def _handle_refund_created(self, payload: WebhookPayload, log: structlog.stdlib.BoundLogger) -> str:
        refund = payload.refund_entity()
        log = log.bind(refund_id=refund.id, gateway_payment_id=refund.payment_id)

        if not await self._first_time(f"refund:{refund.id}"):
            log.info("refund_already_processed")
            return "duplicate"

        return await retry_on_conflict(lambda: self._apply_refund(refund, log), self._retry_attempts)

    async def _apply_refund(self, refund: GatewayRefundEntity, log: structlog.stdlib.BoundLogger) -> str:
        now = datetime.now(UTC)
        amount = from_minor_units(refund.amount)
        async with self._uow_factory() as uow:
            payment = await uow.payments.get_by_gateway_payment_id(refund.payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", f"gateway_payment_id={refund.payment_id}")
            log = log.bind(payment_id=payment.id)

            if refund.id in payment.refund_ids:
                log.info("refund_already_recorded")
                return "duplicate"

            start = len(payment.status_history)
            transactions = apply_refund(payment, refund.id, amount, GATEWAY_ACTOR, ActorType.WEBHOOK, now)

            await uow.payments.update(payment)
            await uow.transactions.add_many(transactions)
            await uow.outbox.add(
                aggregate_type=events.PAYMENT_AGGREGATE,
                aggregate_id=payment.id,
                event_type=events.REFUND_PROCESSED,
                payload=events.payment_payload(payment, refund_id=refund.id, refund_amount=str(amount)),
            )
            await uow.commit()

        self._metrics.record_transitions(payment.status_history[start:])
        full = payment.status == PaymentStatus.REFUNDED
        self._metrics.refunds.labels(kind="full" if full else "partial").inc()
        log.info("refund_recorded", refunded_amount=str(payment.refunded_amount), status=payment.status.value)
        return "processed"

    async def _record_failure(
        self,
        event_type: str,
        event_id: str | None,
        error: Exception,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        try:
            async with self._uow_factory() as uow:
                await uow.outbox.add(
                    aggregate_type=events.WEBHOOK_AGGREGATE,
                    aggregate_id=event_id or event_type,
                    event_type=events.WEBHOOK_PROCESSING_FAILED,
                    payload={
                        "event_type": event_type,
                        "event_id": event_id,
                        "error": str(error),
                        "error_code": getattr(error, "error_code", type(error).__name__),
                        "payment_id": getattr(error, "payment_id", None),
                    },
                )
                await uow.commit()
        except Exception as e:
            log.error("webhook_failure_alert_not_recorded", error=str(e), exc_info=True)
