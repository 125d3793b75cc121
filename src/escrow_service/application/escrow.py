from datetime import UTC, datetime
from decimal import Decimal

import structlog

from escrow_service.application import events
from escrow_service.application.concurrency import exclusive
from escrow_service.application.ports import IdempotencyCoordinator
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.domain.exceptions import (
    CoordinatorUnavailableError,
    InvalidStateError,
    LockConflictError,
    ResourceNotFoundError,
)
from escrow_service.domain.models import ActorType, Payment, Transaction, TransactionType
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()

AUTO_RELEASE_ACTOR = "system:auto-release"


def release_lock_key(payment_id: str) -> str:
    return f"escrow-release:{payment_id}"


class EscrowEngine:
    """
    Holds captured funds and pays them out.

    CAPTURED -> IN_ESCROW -> RELEASED -> SETTLED. Releases run under the
    ``escrow-release:<id>`` lock and every save is a version compare-and-swap,
    so a manual release racing the scheduler moves money once.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        coordinator: IdempotencyCoordinator,
        metrics: EscrowMetrics,
        hold_days: int = 7,
        commission_percent: Decimal = Decimal("10.0"),
        min_commission: Decimal = Decimal("1.00"),
        lock_ttl_seconds: int = 30,
    ) -> None:
        self._uow_factory = uow_factory
        self._coordinator = coordinator
        self._metrics = metrics
        self._hold_days = hold_days
        self._commission_percent = commission_percent
        self._min_commission = min_commission
        self._lock_ttl = lock_ttl_seconds

    def hold_in_escrow(
        self,
        payment: Payment,
        actor: str,
        actor_type: ActorType,
        hold_days: int | None = None,
        now: datetime | None = None,
    ) -> list[Transaction]:
        """Move a CAPTURED payment into escrow.

        Mutates ``payment`` in memory and returns the ledger rows to persist
        with it. The commission is computed here if order creation did not.
        """
        if payment.status != PaymentStatus.CAPTURED:
            raise InvalidStateError(
                f"Only CAPTURED payments can be held in escrow, got {payment.status.value}",
                payment.id,
            )
        if not payment.has_commission:
            payment.apply_commission(self._commission_percent, self._min_commission)

        payment.escrow.hold_days = hold_days if hold_days is not None else self._hold_days
        payment.transition_to(
            PaymentStatus.IN_ESCROW,
            f"Funds held in escrow for {payment.escrow.hold_days} days",
            actor,
            actor_type,
            now,
        )
        return [
            Transaction.create(
                payment,
                TransactionType.ESCROW_HOLD,
                payment.amount,
                description="Funds held in escrow",
            ),
            Transaction.create(
                payment,
                TransactionType.COMMISSION_DEDUCTION,
                payment.platform_commission,
                description=f"Platform commission at rate {payment.commission_rate}",
            ),
        ]

    def auto_release_eligible(self, payment: Payment, now: datetime) -> bool:
        return payment.is_eligible_for_auto_release(now)

    async def release(
        self,
        payment_id: str,
        actor: str,
        actor_type: ActorType = ActorType.ADMIN,
        reason: str = "Escrow released to payee",
        now: datetime | None = None,
        auto: bool = False,
    ) -> Payment:
        log = logger.bind(payment_id=payment_id, actor=actor, auto=auto)
        try:
            async with exclusive(
                self._coordinator,
                release_lock_key(payment_id),
                self._lock_ttl,
                payment_id,
            ):
                async with self._uow_factory() as uow:
                    payment = await uow.payments.get(payment_id)
                    if payment is None:
                        raise ResourceNotFoundError("Payment", payment_id)
                    if payment.status != PaymentStatus.IN_ESCROW:
                        raise InvalidStateError(
                            f"Payment {payment_id} is {payment.status.value}, not IN_ESCROW",
                            payment_id,
                        )

                    if auto:
                        payment.escrow.auto_release_attempted = True
                    change = payment.transition_to(PaymentStatus.RELEASED, reason, actor, actor_type, now)

                    await uow.payments.update(payment)
                    await uow.transactions.add(
                        Transaction.create(
                            payment,
                            TransactionType.ESCROW_RELEASE,
                            payment.payee_payout,
                            description="Escrow released to payee",
                        )
                    )
                    await uow.outbox.add(
                        aggregate_type=events.PAYMENT_AGGREGATE,
                        aggregate_id=payment.id,
                        event_type=events.ESCROW_RELEASED,
                        payload=events.payment_payload(payment, trigger="auto" if auto else "manual"),
                    )
                    await uow.commit()
        except LockConflictError:
            self._metrics.lock_conflicts.labels(operation="escrow_release").inc()
            raise

        self._metrics.record_transitions([change])
        self._metrics.escrow_releases.labels(trigger="auto" if auto else "manual").inc()
        log.info("escrow_released", payee_payout=str(payment.payee_payout), version=payment.version)
        return payment

    async def settle(
        self,
        payment_id: str,
        batch_id: str,
        actor: str,
        actor_type: ActorType = ActorType.ADMIN,
        now: datetime | None = None,
    ) -> Payment:
        log = logger.bind(payment_id=payment_id, batch_id=batch_id, actor=actor)

        async with self._uow_factory() as uow:
            payment = await uow.payments.get(payment_id)
            if payment is None:
                raise ResourceNotFoundError("Payment", payment_id)
            if payment.status != PaymentStatus.RELEASED:
                raise InvalidStateError(
                    f"Payment {payment_id} is {payment.status.value}, not RELEASED",
                    payment_id,
                )

            change = payment.transition_to(
                PaymentStatus.SETTLED,
                f"Settled in batch {batch_id}",
                actor,
                actor_type,
                now,
            )
            payment.escrow.settlement_batch_id = batch_id

            await uow.payments.update(payment)
            await uow.transactions.add(
                Transaction.create(
                    payment,
                    TransactionType.SETTLEMENT,
                    payment.payee_payout,
                    description="Payout settled to payee",
                    external_reference=batch_id,
                )
            )
            await uow.outbox.add(
                aggregate_type=events.PAYMENT_AGGREGATE,
                aggregate_id=payment.id,
                event_type=events.PAYMENT_SETTLED,
                payload=events.payment_payload(payment, batch_id=batch_id),
            )
            await uow.commit()

        self._metrics.record_transitions([change])
        self._metrics.settlements.inc()
        log.info("payment_settled", payee_payout=str(payment.payee_payout))
        return payment

    async def auto_release_sweep(self, now: datetime | None = None) -> int:
        """Release every payment whose hold period has elapsed.

        Each payment is handled in isolation. A payment whose release fails
        is flagged ``auto_release_attempted`` and left for manual review.
        Losing the lock store stops the sweep without flagging anything.
        """
        now = now or datetime.now(UTC)
        released = 0

        with self._metrics.time_sweep("auto_release"):
            async with self._uow_factory() as uow:
                candidates = await uow.payments.list_eligible_for_auto_release(now)

            logger.info("auto_release_sweep_started", candidates=len(candidates))

            for candidate in candidates:
                if not self.auto_release_eligible(candidate, now):
                    continue
                try:
                    await self.release(
                        candidate.id,
                        actor=AUTO_RELEASE_ACTOR,
                        actor_type=ActorType.SCHEDULER,
                        reason="Auto-released after hold period",
                        now=now,
                        auto=True,
                    )
                except LockConflictError:
                    # Another worker is releasing it right now.
                    self._metrics.sweep_items.labels(sweep="auto_release", outcome="skipped").inc()
                    logger.info("auto_release_skipped_locked", payment_id=candidate.id)
                except CoordinatorUnavailableError as e:
                    # Nothing can be locked; the remaining candidates wait for the next run unflagged.
                    self._metrics.sweep_items.labels(sweep="auto_release", outcome="skipped").inc()
                    logger.error(
                        "auto_release_sweep_aborted",
                        payment_id=candidate.id,
                        error=str(e),
                        error_code=e.error_code,
                    )
                    break
                except Exception as e:
                    self._metrics.sweep_items.labels(sweep="auto_release", outcome="failed").inc()
                    logger.error(
                        "auto_release_failed",
                        payment_id=candidate.id,
                        error=str(e),
                        error_code=getattr(e, "error_code", None),
                    )
                    await self._flag_attempted(candidate.id, now)
                else:
                    released += 1
                    self._metrics.sweep_items.labels(sweep="auto_release", outcome="released").inc()

        logger.info("auto_release_sweep_completed", released=released, candidates=len(candidates))
        return released

    async def _flag_attempted(self, payment_id: str, now: datetime) -> None:
        try:
            async with self._uow_factory() as uow:
                payment = await uow.payments.get(payment_id)
                if (
                    payment is None
                    or payment.status != PaymentStatus.IN_ESCROW
                    or payment.escrow.auto_release_attempted
                ):
                    return
                payment.escrow.auto_release_attempted = True
                payment.updated_at = now
                await uow.payments.update(payment)
                await uow.commit()
        except Exception as e:
            logger.error(
                "auto_release_flag_failed",
                payment_id=payment_id,
                error=str(e),
                exc_info=True,
            )
