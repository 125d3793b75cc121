"""Shared pytest fixtures for escrow service tests."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from prometheus_client import CollectorRegistry
from ulid import ULID

from escrow_service.application.disputes import DisputeEngine
from escrow_service.application.escrow import EscrowEngine
from escrow_service.application.payments import CreateOrderCommand, PaymentService
from escrow_service.application.refunds import RefundEngine
from escrow_service.application.reporting import ReportingService
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.application.webhooks import WebhookIngestor
from escrow_service.domain.models import ActorType, Payment
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.metrics import EscrowMetrics
from tests.fakes import FakeGateway, FakeUnitOfWork, InMemoryCoordinator, InMemoryStore


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store: InMemoryStore) -> UnitOfWorkFactory:
    return lambda: FakeUnitOfWork(store)  # type: ignore[return-value]


@pytest.fixture
def coordinator() -> InMemoryCoordinator:
    return InMemoryCoordinator()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def metrics() -> EscrowMetrics:
    """Metrics bound to a private registry so tests never share counters."""
    return EscrowMetrics(registry=CollectorRegistry())


@pytest.fixture
def escrow_engine(
    uow_factory: UnitOfWorkFactory,
    coordinator: InMemoryCoordinator,
    metrics: EscrowMetrics,
) -> EscrowEngine:
    return EscrowEngine(
        uow_factory,
        coordinator,
        metrics,
        hold_days=7,
        commission_percent=Decimal("10.0"),
        min_commission=Decimal("1.00"),
    )


@pytest.fixture
def refund_engine(
    uow_factory: UnitOfWorkFactory,
    coordinator: InMemoryCoordinator,
    gateway: FakeGateway,
    metrics: EscrowMetrics,
) -> RefundEngine:
    return RefundEngine(uow_factory, coordinator, gateway, metrics)


@pytest.fixture
def dispute_engine(
    uow_factory: UnitOfWorkFactory,
    refund_engine: RefundEngine,
    metrics: EscrowMetrics,
) -> DisputeEngine:
    return DisputeEngine(uow_factory, refund_engine, metrics, auto_resolve_days=14)


@pytest.fixture
def webhook_ingestor(
    uow_factory: UnitOfWorkFactory,
    coordinator: InMemoryCoordinator,
    escrow_engine: EscrowEngine,
    metrics: EscrowMetrics,
) -> WebhookIngestor:
    return WebhookIngestor(uow_factory, coordinator, escrow_engine, metrics)


@pytest.fixture
def payment_service(
    uow_factory: UnitOfWorkFactory,
    gateway: FakeGateway,
    metrics: EscrowMetrics,
) -> PaymentService:
    return PaymentService(uow_factory, gateway, metrics)


@pytest.fixture
def reporting_service(uow_factory: UnitOfWorkFactory) -> ReportingService:
    return ReportingService(uow_factory)


def order_command(
    idempotency_key: str = "order-key-001",
    amount: str = "5000.00",
    payer_id: str = "payer-001",
    payee_id: str = "payee-001",
) -> CreateOrderCommand:
    """Helper to build an order command with sensible defaults."""
    return CreateOrderCommand(
        idempotency_key=idempotency_key,
        payer_id=payer_id,
        payee_id=payee_id,
        amount=Decimal(amount),
        currency="INR",
        reference_id="booking-42",
        description="Venue booking",
    )


def captured_webhook(
    gateway_payment_id: str,
    order_id: str,
    amount_minor: int,
    currency: str = "INR",
) -> dict:
    """Payload object of a ``payment.captured`` gateway event."""
    return {
        "payment": {
            "entity": {
                "id": gateway_payment_id,
                "order_id": order_id,
                "amount": amount_minor,
                "currency": currency,
                "method": "upi",
                "status": "captured",
            }
        }
    }


def refund_webhook(refund_id: str, gateway_payment_id: str, amount_minor: int) -> dict:
    return {
        "refund": {
            "entity": {
                "id": refund_id,
                "payment_id": gateway_payment_id,
                "amount": amount_minor,
                "currency": "INR",
            }
        }
    }


def make_escrowed_payment(
    store: InMemoryStore,
    amount: str = "5000.00",
    escrow_started_at: datetime = NOW,
    hold_days: int = 7,
    gateway_payment_id: str | None = None,
    idempotency_key: str | None = None,
) -> Payment:
    """Put an IN_ESCROW payment with a 10% / 1.00 minimum commission straight into ``store``."""
    gateway_payment_id = gateway_payment_id or f"pay_{ULID()}"
    payment = Payment.create(
        idempotency_key=idempotency_key or f"key-{gateway_payment_id}",
        payer_id="payer-001",
        payee_id="payee-001",
        amount=Decimal(amount),
        currency="INR",
        hold_days=hold_days,
    )
    payment.apply_commission(Decimal("10.0"), Decimal("1.00"))
    payment.gateway_order_id = f"order_{gateway_payment_id}"
    payment.gateway_payment_id = gateway_payment_id
    payment.created_at = escrow_started_at - timedelta(minutes=5)
    for status in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.IN_ESCROW):
        payment.transition_to(status, "test setup", "gateway", ActorType.WEBHOOK, escrow_started_at)
    store.payments[payment.id] = payment
    return payment
