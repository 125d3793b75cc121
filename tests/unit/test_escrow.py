"""Unit tests for EscrowEngine."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from escrow_service.application.escrow import EscrowEngine
from escrow_service.domain.exceptions import (
    InvalidStateError,
    LockConflictError,
    ResourceNotFoundError,
)
from escrow_service.domain.models import ActorType, Payment, TransactionType
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.metrics import EscrowMetrics
from tests.conftest import NOW, make_escrowed_payment
from tests.fakes import InMemoryCoordinator, InMemoryStore


AFTER_HOLD = NOW + timedelta(days=7, seconds=1)


def releases(store: InMemoryStore, payment_id: str) -> list:
    return [t for t in store.transactions_for(payment_id) if t.type == TransactionType.ESCROW_RELEASE]


class TestHoldInEscrow:
    """Tests for hold_in_escrow()."""

    def test_hold_computes_missing_commission(self, escrow_engine: EscrowEngine) -> None:
        """A payment captured without a commission split gets one on entry."""
        payment = Payment.create(
            idempotency_key="k",
            payer_id="payer-001",
            payee_id="payee-001",
            amount=Decimal("5000.00"),
            currency="INR",
            hold_days=7,
        )
        payment.transition_to(PaymentStatus.AUTHORIZED, "t", "gateway", ActorType.WEBHOOK, NOW)
        payment.transition_to(PaymentStatus.CAPTURED, "t", "gateway", ActorType.WEBHOOK, NOW)

        held = escrow_engine.hold_in_escrow(payment, "gateway", ActorType.WEBHOOK, hold_days=3, now=NOW)

        assert payment.status == PaymentStatus.IN_ESCROW
        assert payment.platform_commission == Decimal("500.00")
        assert payment.escrow.release_eligible_at == NOW + timedelta(days=3)
        assert [(t.type, t.amount) for t in held] == [
            (TransactionType.ESCROW_HOLD, Decimal("5000.00")),
            (TransactionType.COMMISSION_DEDUCTION, Decimal("500.00")),
        ]

    def test_hold_requires_captured(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)

        with pytest.raises(InvalidStateError):
            escrow_engine.hold_in_escrow(payment, "gateway", ActorType.WEBHOOK)


class TestRelease:
    """Tests for manual release."""

    @pytest.mark.asyncio
    async def test_release_pays_out_net_of_commission(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
        coordinator: InMemoryCoordinator,
    ) -> None:
        """Release records the payee payout and emits EscrowReleased."""
        payment = make_escrowed_payment(store)

        released = await escrow_engine.release(payment.id, actor="admin-1", now=NOW + timedelta(days=1))

        assert released.status == PaymentStatus.RELEASED
        assert released.released_at == NOW + timedelta(days=1)
        assert store.payment(payment.id).status == PaymentStatus.RELEASED
        assert [t.amount for t in releases(store, payment.id)] == [Decimal("4500.00")]

        event = store.events("EscrowReleased")[0]
        assert event.payload["trigger"] == "manual"
        assert event.payload["payee_payout"] == "4500.00"
        assert coordinator.acquired == [f"escrow-release:{payment.id}"]
        assert coordinator.locks == {}

    @pytest.mark.asyncio
    async def test_release_twice_is_rejected(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)
        await escrow_engine.release(payment.id, actor="admin-1")

        with pytest.raises(InvalidStateError):
            await escrow_engine.release(payment.id, actor="admin-1")

        assert len(releases(store, payment.id)) == 1

    @pytest.mark.asyncio
    async def test_release_unknown_payment(self, escrow_engine: EscrowEngine) -> None:
        with pytest.raises(ResourceNotFoundError):
            await escrow_engine.release("missing", actor="admin-1")

    @pytest.mark.asyncio
    async def test_release_while_locked(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
        coordinator: InMemoryCoordinator,
        metrics: EscrowMetrics,
    ) -> None:
        """A held release lock rejects the second caller without touching the payment."""
        payment = make_escrowed_payment(store)
        coordinator.locks[f"escrow-release:{payment.id}"] = "other-worker"

        with pytest.raises(LockConflictError):
            await escrow_engine.release(payment.id, actor="admin-1")

        assert store.payment(payment.id).status == PaymentStatus.IN_ESCROW
        assert (
            metrics.registry.get_sample_value("escrow_lock_conflicts_total", {"operation": "escrow_release"}) == 1
        )

    @pytest.mark.asyncio
    async def test_release_of_disputed_payment_is_rejected(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
    ) -> None:
        payment = make_escrowed_payment(store)
        store.payments[payment.id].status = PaymentStatus.DISPUTE_OPEN

        with pytest.raises(InvalidStateError):
            await escrow_engine.release(payment.id, actor="admin-1")


class TestSettle:
    """Tests for settle()."""

    @pytest.mark.asyncio
    async def test_settle_released_payment(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)
        await escrow_engine.release(payment.id, actor="admin-1")

        settled = await escrow_engine.settle(payment.id, batch_id="batch-2026-03-08", actor="admin-1")

        assert settled.status == PaymentStatus.SETTLED
        assert settled.escrow.settlement_batch_id == "batch-2026-03-08"
        settlement = [t for t in store.transactions_for(payment.id) if t.type == TransactionType.SETTLEMENT]
        assert len(settlement) == 1
        assert settlement[0].amount == Decimal("4500.00")
        assert settlement[0].external_reference == "batch-2026-03-08"
        assert store.events("PaymentSettled")[0].payload["batch_id"] == "batch-2026-03-08"

    @pytest.mark.asyncio
    async def test_settle_requires_release(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)

        with pytest.raises(InvalidStateError):
            await escrow_engine.settle(payment.id, batch_id="batch-1", actor="admin-1")


class TestAutoReleaseSweep:
    """Tests for the scheduled auto-release."""

    @pytest.mark.asyncio
    async def test_releases_only_due_payments(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        due = make_escrowed_payment(store, gateway_payment_id="pay_due")
        not_due = make_escrowed_payment(store, escrow_started_at=NOW + timedelta(days=1), gateway_payment_id="pay_new")

        released = await escrow_engine.auto_release_sweep(AFTER_HOLD)

        assert released == 1
        assert store.payment(due.id).status == PaymentStatus.RELEASED
        assert store.payment(due.id).escrow.auto_release_attempted
        assert store.payment(not_due.id).status == PaymentStatus.IN_ESCROW
        assert store.events("EscrowReleased")[0].payload["trigger"] == "auto"

    @pytest.mark.asyncio
    async def test_hold_boundary_is_exclusive(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        """Exactly at release_eligible_at the payment is not yet due."""
        payment = make_escrowed_payment(store)

        assert await escrow_engine.auto_release_sweep(NOW + timedelta(days=7)) == 0
        assert store.payment(payment.id).status == PaymentStatus.IN_ESCROW

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)

        await escrow_engine.auto_release_sweep(AFTER_HOLD)
        assert await escrow_engine.auto_release_sweep(AFTER_HOLD) == 0

        assert len(releases(store, payment.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_release_once(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
        metrics: EscrowMetrics,
    ) -> None:
        """Two schedulers racing over the same payment move the money once."""
        payment = make_escrowed_payment(store)

        results = await asyncio.gather(
            escrow_engine.auto_release_sweep(AFTER_HOLD),
            escrow_engine.auto_release_sweep(AFTER_HOLD),
        )

        assert sum(results) == 1
        assert len(releases(store, payment.id)) == 1
        assert len(store.events("EscrowReleased")) == 1
        assert (
            metrics.registry.get_sample_value(
                "escrow_sweep_items_total", {"sweep": "auto_release", "outcome": "released"}
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_manual_release_racing_sweep(self, escrow_engine: EscrowEngine, store: InMemoryStore) -> None:
        payment = make_escrowed_payment(store)

        results = await asyncio.gather(
            escrow_engine.release(payment.id, actor="admin-1"),
            escrow_engine.auto_release_sweep(AFTER_HOLD),
            return_exceptions=True,
        )

        assert store.payment(payment.id).status == PaymentStatus.RELEASED
        assert len(releases(store, payment.id)) == 1
        assert not any(isinstance(r, Exception) and not isinstance(r, LockConflictError) for r in results)

    @pytest.mark.asyncio
    async def test_failed_release_is_flagged_for_review(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
    ) -> None:
        """A payment whose release errors is marked attempted and skipped afterwards."""
        payment = make_escrowed_payment(store)
        failing_release = AsyncMock(side_effect=InvalidStateError("Ledger write rejected", payment.id))

        with patch.object(escrow_engine, "release", failing_release):
            assert await escrow_engine.auto_release_sweep(AFTER_HOLD) == 0

        stored = store.payment(payment.id)
        assert stored.status == PaymentStatus.IN_ESCROW
        assert stored.escrow.auto_release_attempted
        assert await escrow_engine.auto_release_sweep(AFTER_HOLD) == 0

    @pytest.mark.asyncio
    async def test_coordinator_outage_leaves_payments_unflagged(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
        coordinator: InMemoryCoordinator,
        metrics: EscrowMetrics,
    ) -> None:
        """A Redis outage stops the sweep; every payment is released on the next run."""
        first = make_escrowed_payment(store)
        second = make_escrowed_payment(store, escrow_started_at=NOW + timedelta(seconds=1))
        coordinator.available = False

        assert await escrow_engine.auto_release_sweep(AFTER_HOLD + timedelta(seconds=1)) == 0

        for payment in (first, second):
            stored = store.payment(payment.id)
            assert stored.status == PaymentStatus.IN_ESCROW
            assert not stored.escrow.auto_release_attempted
        assert (
            metrics.registry.get_sample_value(
                "escrow_sweep_items_total", {"sweep": "auto_release", "outcome": "failed"}
            )
            is None
        )

        coordinator.available = True
        assert await escrow_engine.auto_release_sweep(AFTER_HOLD + timedelta(seconds=1)) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
        coordinator: InMemoryCoordinator,
    ) -> None:
        locked = make_escrowed_payment(store, gateway_payment_id="pay_locked")
        free = make_escrowed_payment(store, escrow_started_at=NOW + timedelta(seconds=1), gateway_payment_id="pay_free")
        coordinator.locks[f"escrow-release:{locked.id}"] = "other-worker"

        released = await escrow_engine.auto_release_sweep(AFTER_HOLD + timedelta(seconds=1))

        assert released == 1
        assert store.payment(free.id).status == PaymentStatus.RELEASED
        locked_after = store.payment(locked.id)
        assert locked_after.status == PaymentStatus.IN_ESCROW
        assert not locked_after.escrow.auto_release_attempted
