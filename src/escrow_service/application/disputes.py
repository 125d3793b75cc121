from datetime import UTC, datetime
from decimal import Decimal

import structlog

from escrow_service.application import events
from escrow_service.application.concurrency import retry_on_conflict
from escrow_service.application.refunds import RefundEngine
from escrow_service.application.unit_of_work import UnitOfWork, UnitOfWorkFactory
from escrow_service.domain.exceptions import (
    DuplicateDisputeError,
    InvalidAmountError,
    InvalidStateError,
    ResourceNotFoundError,
)
from escrow_service.domain.models import (
    ActorType,
    Dispute,
    DisputeRole,
    Evidence,
    Payment,
    Transaction,
    TransactionType,
)
from escrow_service.domain.status import DisputeStatus, PaymentStatus
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()

AUTO_RESOLVE_ACTOR = "system:auto-resolve"


def _actor_type_for(role: DisputeRole) -> ActorType:
    return ActorType.ADMIN if role == DisputeRole.ADMIN else ActorType.USER


class DisputeEngine:
    """
    Freezes escrow while a dispute is open and applies the adjudication.

    Payer wins: DISPUTE_OPEN -> DISPUTE_LOST, then a refund of the disputed
    amount. Payee wins (or nobody acts before ``auto_resolve_at``):
    DISPUTE_OPEN -> DISPUTE_WON -> RELEASED.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        refunds: RefundEngine,
        metrics: EscrowMetrics,
        auto_resolve_days: int = 14,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self._refunds = refunds
        self._metrics = metrics
        self._auto_resolve_days = auto_resolve_days
        self._retry_attempts = conflict_retry_attempts

    async def raise_dispute(
        self,
        payment_id: str,
        raised_by: str,
        role: DisputeRole,
        reason: str,
        category: str | None = None,
        disputed_amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        log = logger.bind(payment_id=payment_id, raised_by=raised_by, role=role.value)

        async def open_dispute() -> tuple[Dispute, Payment]:
            async with self._uow_factory() as uow:
                payment = await self._get_payment(uow, payment_id)
                if payment.status != PaymentStatus.IN_ESCROW:
                    raise InvalidStateError(
                        f"Disputes can only be raised while funds are in escrow, payment is {payment.status.value}",
                        payment_id,
                    )
                if await uow.disputes.get_active_for_payment(payment_id) is not None:
                    raise DuplicateDisputeError(payment_id)

                amount = disputed_amount if disputed_amount is not None else payment.refundable_amount
                if amount <= 0 or amount > payment.refundable_amount:
                    raise InvalidAmountError(
                        amount,
                        f"disputed amount must be positive and at most {payment.refundable_amount}",
                        payment_id,
                    )

                dispute = Dispute.create(
                    payment_id=payment_id,
                    raised_by=raised_by,
                    raised_by_role=role,
                    reason=reason,
                    disputed_amount=amount,
                    auto_resolve_days=self._auto_resolve_days,
                    category=category,
                    now=now,
                )
                payment.transition_to(
                    PaymentStatus.DISPUTE_OPEN,
                    f"Dispute raised: {reason}",
                    raised_by,
                    _actor_type_for(role),
                    now,
                )

                await uow.disputes.add(dispute)
                await uow.payments.update(payment)
                await uow.outbox.add(
                    aggregate_type=events.DISPUTE_AGGREGATE,
                    aggregate_id=dispute.id,
                    event_type=events.DISPUTE_RAISED,
                    payload=events.dispute_payload(dispute, reason=reason, category=category),
                )
                await uow.commit()
                return dispute, payment

        dispute, payment = await retry_on_conflict(open_dispute, self._retry_attempts)

        self._metrics.record_transitions(payment.status_history[-1:])
        self._metrics.disputes.labels(outcome="raised").inc()
        log.info(
            "dispute_raised",
            dispute_id=dispute.id,
            disputed_amount=str(dispute.disputed_amount),
            auto_resolve_at=dispute.auto_resolve_at,
        )
        return dispute

    async def mark_under_review(self, dispute_id: str, reviewer: str, now: datetime | None = None) -> Dispute:
        async with self._uow_factory() as uow:
            dispute = await self._get_dispute(uow, dispute_id)
            dispute.mark_under_review(now)
            await uow.disputes.update(dispute)
            await uow.commit()

        logger.info("dispute_under_review", dispute_id=dispute_id, payment_id=dispute.payment_id, reviewer=reviewer)
        return dispute

    async def add_evidence(
        self,
        dispute_id: str,
        submitted_by: str,
        role: DisputeRole,
        description: str,
        attachment_url: str | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        evidence = Evidence(
            submitted_by=submitted_by,
            submitted_by_role=role,
            description=description,
            attachment_url=attachment_url,
            submitted_at=now or datetime.now(UTC),
        )

        async def append() -> Dispute:
            async with self._uow_factory() as uow:
                dispute = await self._get_dispute(uow, dispute_id)
                dispute.add_evidence(evidence)
                await uow.disputes.update(dispute)
                await uow.commit()
                return dispute

        dispute = await retry_on_conflict(append, self._retry_attempts)
        logger.info(
            "dispute_evidence_added",
            dispute_id=dispute_id,
            submitted_by=submitted_by,
            evidence_count=len(dispute.evidence),
        )
        return dispute

    async def resolve_for_payer(
        self,
        dispute_id: str,
        resolved_by: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Refund the disputed amount to the payer.

        The dispute outcome and DISPUTE_LOST are committed first. A refund that
        then fails is logged and left for an operator; the adjudication stands.
        """
        log = logger.bind(dispute_id=dispute_id, resolved_by=resolved_by)

        async with self._uow_factory() as uow:
            dispute = await self._get_dispute(uow, dispute_id)
            payment = await self._get_payment(uow, dispute.payment_id)
            dispute.resolve(DisputeStatus.RESOLVED_PAYER_FAVOR, resolved_by, notes, now)
            change = payment.transition_to(
                PaymentStatus.DISPUTE_LOST,
                "Dispute resolved in payer's favor",
                resolved_by,
                ActorType.ADMIN,
                now,
            )

            await uow.disputes.update(dispute)
            await uow.payments.update(payment)
            await uow.outbox.add(
                aggregate_type=events.DISPUTE_AGGREGATE,
                aggregate_id=dispute.id,
                event_type=events.DISPUTE_RESOLVED,
                payload=events.dispute_payload(dispute, notes=notes),
            )
            await uow.commit()

        self._metrics.record_transitions([change])
        self._metrics.disputes.labels(outcome="payer_favor").inc()
        log.info("dispute_resolved_for_payer", payment_id=payment.id, disputed_amount=str(dispute.disputed_amount))

        try:
            await self._refunds.initiate_refund(
                payment.id,
                dispute.disputed_amount,
                f"Dispute {dispute.id} resolved in payer's favor",
                resolved_by,
                ActorType.ADMIN,
                now,
            )
        except Exception as e:
            log.error(
                "dispute_refund_failed",
                payment_id=payment.id,
                error=str(e),
                error_code=getattr(e, "error_code", None),
                exc_info=True,
            )
        return dispute

    async def resolve_for_payee(
        self,
        dispute_id: str,
        resolved_by: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        dispute = await self._resolve_in_payee_favor(
            dispute_id,
            DisputeStatus.RESOLVED_PAYEE_FAVOR,
            resolved_by,
            ActorType.ADMIN,
            notes,
            now,
        )
        self._metrics.disputes.labels(outcome="payee_favor").inc()
        logger.info("dispute_resolved_for_payee", dispute_id=dispute_id, payment_id=dispute.payment_id)
        return dispute

    async def auto_resolve_sweep(self, now: datetime | None = None) -> int:
        """Resolve every OPEN dispute past ``auto_resolve_at`` in the payee's favor."""
        now = now or datetime.now(UTC)
        resolved = 0

        with self._metrics.time_sweep("auto_resolve"):
            async with self._uow_factory() as uow:
                due = await uow.disputes.list_due_for_auto_resolve(now)

            logger.info("auto_resolve_sweep_started", candidates=len(due))

            for candidate in due:
                try:
                    await self._resolve_in_payee_favor(
                        candidate.id,
                        DisputeStatus.AUTO_RESOLVED,
                        AUTO_RESOLVE_ACTOR,
                        ActorType.SCHEDULER,
                        f"Auto-resolved after {self._auto_resolve_days} days in payee's favor",
                        now,
                        due_before=now,
                    )
                except Exception as e:
                    self._metrics.sweep_items.labels(sweep="auto_resolve", outcome="failed").inc()
                    logger.error(
                        "auto_resolve_failed",
                        dispute_id=candidate.id,
                        payment_id=candidate.payment_id,
                        error=str(e),
                        error_code=getattr(e, "error_code", None),
                    )
                else:
                    resolved += 1
                    self._metrics.sweep_items.labels(sweep="auto_resolve", outcome="resolved").inc()
                    self._metrics.disputes.labels(outcome="auto_resolved").inc()

        logger.info("auto_resolve_sweep_completed", resolved=resolved, candidates=len(due))
        return resolved

    async def get_dispute(self, dispute_id: str) -> Dispute:
        async with self._uow_factory() as uow:
            return await self._get_dispute(uow, dispute_id)

    async def list_for_payment(self, payment_id: str) -> list[Dispute]:
        async with self._uow_factory() as uow:
            return await uow.disputes.list_by_payment(payment_id)

    async def list_by_status(self, status: DisputeStatus, limit: int = 100) -> list[Dispute]:
        async with self._uow_factory() as uow:
            return await uow.disputes.list_by_status(status, limit)

    async def _resolve_in_payee_favor(
        self,
        dispute_id: str,
        outcome: DisputeStatus,
        resolved_by: str,
        actor_type: ActorType,
        notes: str | None,
        now: datetime | None,
        due_before: datetime | None = None,
    ) -> Dispute:
        async with self._uow_factory() as uow:
            dispute = await self._get_dispute(uow, dispute_id)
            if due_before is not None and (
                dispute.status != DisputeStatus.OPEN or dispute.auto_resolve_at >= due_before
            ):
                raise InvalidStateError(
                    f"Dispute {dispute_id} is no longer due for auto-resolution",
                    dispute.payment_id,
                )
            payment = await self._get_payment(uow, dispute.payment_id)
            start = len(payment.status_history)

            dispute.resolve(outcome, resolved_by, notes, now)
            payment.transition_to(
                PaymentStatus.DISPUTE_WON,
                "Dispute resolved in payee's favor",
                resolved_by,
                actor_type,
                now,
            )
            payment.transition_to(
                PaymentStatus.RELEASED,
                "Escrow released after dispute resolution",
                resolved_by,
                actor_type,
                now,
            )

            await uow.disputes.update(dispute)
            await uow.payments.update(payment)
            await uow.transactions.add(
                Transaction.create(
                    payment,
                    TransactionType.ESCROW_RELEASE,
                    payment.payee_payout,
                    description=f"Escrow released after dispute {dispute.id}",
                )
            )
            await uow.outbox.add(
                aggregate_type=events.DISPUTE_AGGREGATE,
                aggregate_id=dispute.id,
                event_type=events.DISPUTE_RESOLVED,
                payload=events.dispute_payload(dispute, notes=notes),
            )
            await uow.outbox.add(
                aggregate_type=events.PAYMENT_AGGREGATE,
                aggregate_id=payment.id,
                event_type=events.ESCROW_RELEASED,
                payload=events.payment_payload(payment, trigger="dispute", dispute_id=dispute.id),
            )
            await uow.commit()

        self._metrics.record_transitions(payment.status_history[start:])
        self._metrics.escrow_releases.labels(trigger="dispute").inc()
        return dispute

    @staticmethod
    async def _get_dispute(uow: UnitOfWork, dispute_id: str) -> Dispute:
        dispute = await uow.disputes.get(dispute_id)
        if dispute is None:
            raise ResourceNotFoundError("Dispute", dispute_id)
        return dispute

    @staticmethod
    async def _get_payment(uow: UnitOfWork, payment_id: str) -> Payment:
        payment = await uow.payments.get(payment_id)
        if payment is None:
            raise ResourceNotFoundError("Payment", payment_id)
        return payment
