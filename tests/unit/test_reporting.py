"""Unit tests for ReportingService."""

from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_service.application.disputes import DisputeEngine
from escrow_service.application.escrow import EscrowEngine
from escrow_service.application.refunds import RefundEngine
from escrow_service.application.reporting import ReportingService
from escrow_service.domain.models import ActorType, DisputeRole, Payment
from escrow_service.domain.status import PaymentStatus
from tests.conftest import NOW, make_escrowed_payment
from tests.fakes import InMemoryStore


WINDOW_FROM = NOW - timedelta(hours=1)
WINDOW_TO = NOW + timedelta(hours=1)


def add_failed_payment(store: InMemoryStore, amount: str = "2000.00") -> Payment:
    payment = Payment.create(
        idempotency_key="key-failed",
        payer_id="payer-001",
        payee_id="payee-001",
        amount=Decimal(amount),
        currency="INR",
        hold_days=7,
    )
    payment.created_at = NOW
    payment.transition_to(PaymentStatus.FAILED, "Card declined", "gateway", ActorType.WEBHOOK, NOW)
    store.payments[payment.id] = payment
    return payment


class TestRevenueStats:
    """Tests for revenue_stats()."""

    @pytest.mark.asyncio
    async def test_empty_window(self, reporting_service: ReportingService) -> None:
        stats = await reporting_service.revenue_stats(WINDOW_FROM, WINDOW_TO)

        assert stats.gross_merchandise_value == Decimal("0.00")
        assert stats.completed_payments == 0
        assert stats.refund_rate == Decimal("0.00")
        assert stats.failure_rate == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_mixed_payments(
        self,
        reporting_service: ReportingService,
        escrow_engine: EscrowEngine,
        store: InMemoryStore,
    ) -> None:
        """GMV and revenue count captured money only; failures only count towards the rate."""
        make_escrowed_payment(store, amount="5000.00", gateway_payment_id="pay_held")
        released = make_escrowed_payment(store, amount="1000.00", gateway_payment_id="pay_released")
        await escrow_engine.release(released.id, actor="admin-1")
        add_failed_payment(store)

        stats = await reporting_service.revenue_stats(WINDOW_FROM, WINDOW_TO)

        assert stats.gross_merchandise_value == Decimal("6000.00")
        assert stats.net_platform_revenue == Decimal("600.00")
        assert stats.escrow_balance == Decimal("5000.00")
        assert stats.payee_payouts == Decimal("900.00")
        assert stats.completed_payments == 1
        assert stats.failure_rate == Decimal("33.33")
        assert stats.refund_rate == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_refunds_reduce_revenue(
        self,
        reporting_service: ReportingService,
        refund_engine: RefundEngine,
        store: InMemoryStore,
    ) -> None:
        """Reversed commission is netted out of platform revenue."""
        payment = make_escrowed_payment(store)
        await refund_engine.initiate_refund(payment.id, Decimal("1000.00"), None, actor="admin-1")

        stats = await reporting_service.revenue_stats(WINDOW_FROM, WINDOW_TO)

        assert stats.gross_merchandise_value == Decimal("5000.00")
        assert stats.net_platform_revenue == Decimal("400.00")
        assert stats.refunded_total == Decimal("1000.00")
        assert stats.refund_rate == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_payments_outside_window_are_excluded(
        self,
        reporting_service: ReportingService,
        store: InMemoryStore,
    ) -> None:
        make_escrowed_payment(store, escrow_started_at=NOW - timedelta(days=2))

        stats = await reporting_service.revenue_stats(WINDOW_FROM, WINDOW_TO)

        assert stats.gross_merchandise_value == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_active_disputes_counted(
        self,
        reporting_service: ReportingService,
        dispute_engine: DisputeEngine,
        store: InMemoryStore,
    ) -> None:
        payment = make_escrowed_payment(store)
        await dispute_engine.raise_dispute(payment.id, "payer-001", DisputeRole.PAYER, "Not delivered", now=NOW)

        stats = await reporting_service.revenue_stats(WINDOW_FROM, WINDOW_TO)

        assert stats.active_disputes == 1
        assert stats.escrow_balance == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_window_must_be_ordered(self, reporting_service: ReportingService) -> None:
        with pytest.raises(ValueError, match="after its start"):
            await reporting_service.revenue_stats(WINDOW_TO, WINDOW_FROM)
