from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog

from escrow_service.application import events
from escrow_service.application.concurrency import exclusive, retry_on_conflict
from escrow_service.application.ports import GatewayRefund, IdempotencyCoordinator, PaymentGateway
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.domain.exceptions import (
    ExternalGatewayError,
    InvalidAmountError,
    InvalidStateError,
    LockConflictError,
    ResourceNotFoundError,
)
from escrow_service.domain.models import CENT, ActorType, Payment, Transaction, TransactionType
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.gateway import from_minor_units, to_minor_units
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()


def refund_lock_key(payment_id: str) -> str:
    return f"refund:{payment_id}"


def refundable_amount(payment: Payment) -> Decimal:
    return payment.amount - payment.refunded_amount


def commission_reversal(payment: Payment, refund_amount: Decimal) -> Decimal:
    """Commission to hand back for a refund already added to ``refunded_amount``.

    Partial refunds reverse a proportional share; the refund that completes
    the payment reverses whatever is left, so the reversals always sum to
    ``platform_commission``.
    """
    remaining = payment.platform_commission - payment.commission_reversed
    if remaining <= 0:
        return Decimal("0.00")
    if payment.refunded_amount >= payment.amount:
        return remaining
    share = (payment.platform_commission * refund_amount / payment.amount).quantize(CENT, rounding=ROUND_HALF_UP)
    return min(share, remaining)


def apply_refund(
    payment: Payment,
    refund_id: str,
    amount: Decimal,
    actor: str,
    actor_type: ActorType,
    now: datetime | None = None,
) -> list[Transaction]:
    """Record a gateway-confirmed refund on ``payment`` in memory.

    Passes through REFUND_REQUESTED when the payment is not already in a
    refund state, then lands on REFUNDED or PARTIALLY_REFUNDED. A further
    partial refund of a PARTIALLY_REFUNDED payment leaves the status as is.
    """
    if amount <= 0 or amount > refundable_amount(payment):
        raise InvalidAmountError(
            amount,
            f"refund must be positive and at most {refundable_amount(payment)}",
            payment.id,
        )

    if not payment.status.is_refund_in_progress:
        payment.transition_to(PaymentStatus.REFUND_REQUESTED, "Refund initiated at gateway", actor, actor_type, now)

    payment.record_refund(refund_id, amount)
    full = payment.refunded_amount >= payment.amount

    if full:
        payment.transition_to(PaymentStatus.REFUNDED, f"Full refund {refund_id}", actor, actor_type, now)
    elif payment.status != PaymentStatus.PARTIALLY_REFUNDED:
        payment.transition_to(
            PaymentStatus.PARTIALLY_REFUNDED,
            f"Partial refund {refund_id} of {amount}",
            actor,
            actor_type,
            now,
        )

    transactions = [
        Transaction.create(
            payment,
            TransactionType.REFUND if full else TransactionType.PARTIAL_REFUND,
            amount,
            description="Refund to payer",
            external_reference=refund_id,
        )
    ]

    reversal = commission_reversal(payment, amount)
    if reversal > 0:
        payment.commission_reversed += reversal
        transactions.append(
            Transaction.create(
                payment,
                TransactionType.COMMISSION_REVERSAL,
                reversal,
                description="Platform commission reversed",
                external_reference=refund_id,
            )
        )
    return transactions


class RefundEngine:
    """
    Gateway refunds against captured payments.

    The REFUND_REQUESTED state is committed before the gateway is called, so a
    timeout leaves a visible, retryable payment rather than a silent gap.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        coordinator: IdempotencyCoordinator,
        gateway: PaymentGateway,
        metrics: EscrowMetrics,
        lock_ttl_seconds: int = 30,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self._coordinator = coordinator
        self._gateway = gateway
        self._metrics = metrics
        self._lock_ttl = lock_ttl_seconds
        self._retry_attempts = conflict_retry_attempts

    def refundable_amount(self, payment: Payment) -> Decimal:
        return refundable_amount(payment)

    async def initiate_refund(
        self,
        payment_id: str,
        requested_amount: Decimal,
        reason: str | None,
        actor: str,
        actor_type: ActorType = ActorType.ADMIN,
        now: datetime | None = None,
    ) -> Payment:
        log = logger.bind(payment_id=payment_id, actor=actor, requested_amount=str(requested_amount))

        try:
            async with exclusive(
                self._coordinator,
                refund_lock_key(payment_id),
                self._lock_ttl,
                payment_id,
            ):
                payment, gateway_payment_id = await self._request_refund(
                    payment_id, requested_amount, reason, actor, actor_type, now
                )

                try:
                    refund = await self._gateway.create_refund(
                        gateway_payment_id,
                        to_minor_units(requested_amount),
                        reason,
                    )
                except ExternalGatewayError as e:
                    self._metrics.refunds.labels(kind="failed").inc()
                    log.error("refund_gateway_failed", error=str(e), status=payment.status.value)
                    raise

                log.info("refund_accepted_by_gateway", refund_id=refund.id, amount_minor=refund.amount_minor)
                return await retry_on_conflict(
                    lambda: self._record_refund(payment_id, refund, actor, actor_type, now, log),
                    self._retry_attempts,
                )
        except LockConflictError:
            self._metrics.lock_conflicts.labels(operation="refund").inc()
            raise

    async def _request_refund(
        self,
        payment_id: str,
        requested_amount: Decimal,
        reason: str | None,
        actor: str,
        actor_type: ActorType,
        now: datetime | None,
    ) -> tuple[Payment, str]:
        async with self._uow_factory() as uow:
            payment = await uow.payments.get(payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", payment_id)
            if not (payment.status.is_refundable or payment.status.is_refund_in_progress):
                raise InvalidStateError(
                    f"Payment {payment_id} is {payment.status.value} and cannot be refunded",
                    payment_id,
                )
            if payment.gateway_payment_id is None:
                raise InvalidStateError(f"Payment {payment_id} has no captured gateway payment", payment_id)
            available = refundable_amount(payment)
            if requested_amount <= 0 or requested_amount > available:
                raise InvalidAmountError(
                    requested_amount,
                    f"refund must be positive and at most {available}",
                    payment_id,
                )

            if payment.status != PaymentStatus.REFUND_REQUESTED:
                change = payment.transition_to(
                    PaymentStatus.REFUND_REQUESTED,
                    reason or "Refund requested",
                    actor,
                    actor_type,
                    now,
                )
                await uow.payments.update(payment)
                await uow.commit()
                self._metrics.record_transitions([change])
            return payment, payment.gateway_payment_id

    async def _record_refund(
        self,
        payment_id: str,
        refund: GatewayRefund,
        actor: str,
        actor_type: ActorType,
        now: datetime | None,
        log: structlog.stdlib.BoundLogger,
    ) -> Payment:
        async with self._uow_factory() as uow:
            payment = await uow.payments.get(payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", payment_id)
            if refund.id in payment.refund_ids:
                log.info("refund_already_recorded", refund_id=refund.id)
                return payment

            start = len(payment.status_history)
            amount = from_minor_units(refund.amount_minor)
            transactions = apply_refund(payment, refund.id, amount, actor, actor_type, now)

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
        log.info(
            "refund_processed",
            refund_id=refund.id,
            refunded_amount=str(payment.refunded_amount),
            commission_reversed=str(payment.commission_reversed),
            status=payment.status.value,
        )
        return payment
