"""Application layer - engines and use cases."""

from escrow_service.application.disputes import DisputeEngine
from escrow_service.application.engines import Engines, build_engines
from escrow_service.application.escrow import EscrowEngine
from escrow_service.application.payments import CreateOrderCommand, CreateOrderResult, PaymentService
from escrow_service.application.refunds import RefundEngine
from escrow_service.application.reporting import ReportingService, RevenueStats
from escrow_service.application.scheduler import SweepScheduler
from escrow_service.application.unit_of_work import UnitOfWork
from escrow_service.application.webhooks import WebhookIngestor, WebhookOutcome


__all__ = [
    "CreateOrderCommand",
    "CreateOrderResult",
    "DisputeEngine",
    "Engines",
    "EscrowEngine",
    "PaymentService",
    "RefundEngine",
    "ReportingService",
    "RevenueStats",
    "SweepScheduler",
    "UnitOfWork",
    "WebhookIngestor",
    "WebhookOutcome",
    "build_engines",
]
