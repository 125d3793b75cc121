from dataclasses import dataclass

from escrow_service.application.disputes import DisputeEngine
from escrow_service.application.escrow import EscrowEngine
from escrow_service.application.payments import PaymentService
from escrow_service.application.ports import IdempotencyCoordinator, PaymentGateway
from escrow_service.application.refunds import RefundEngine
from escrow_service.application.reporting import ReportingService
from escrow_service.application.scheduler import SweepScheduler
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.application.webhooks import WebhookIngestor
from escrow_service.config import Settings
from escrow_service.infrastructure.metrics import EscrowMetrics


@dataclass
class Engines:
    payments: PaymentService
    escrow: EscrowEngine
    refunds: RefundEngine
    disputes: DisputeEngine
    webhooks: WebhookIngestor
    reporting: ReportingService
    scheduler: SweepScheduler
    gateway: PaymentGateway
    metrics: EscrowMetrics


def build_engines(
    uow_factory: UnitOfWorkFactory,
    coordinator: IdempotencyCoordinator,
    gateway: PaymentGateway,
    metrics: EscrowMetrics,
    settings: Settings,
) -> Engines:
    """Wire every engine against one set of collaborators."""
    escrow = EscrowEngine(
        uow_factory,
        coordinator,
        metrics,
        hold_days=settings.escrow_hold_days,
        commission_percent=settings.commission_percent,
        min_commission=settings.min_commission,
        lock_ttl_seconds=settings.lock_ttl_seconds,
    )
    refunds = RefundEngine(
        uow_factory,
        coordinator,
        gateway,
        metrics,
        lock_ttl_seconds=settings.lock_ttl_seconds,
        conflict_retry_attempts=settings.conflict_retry_attempts,
    )
    disputes = DisputeEngine(
        uow_factory,
        refunds,
        metrics,
        auto_resolve_days=settings.dispute_auto_resolve_days,
        conflict_retry_attempts=settings.conflict_retry_attempts,
    )
    return Engines(
        payments=PaymentService(
            uow_factory,
            gateway,
            metrics,
            hold_days=settings.escrow_hold_days,
            commission_percent=settings.commission_percent,
            min_commission=settings.min_commission,
            max_payment_amount=settings.max_payment_amount,
            default_currency=settings.default_currency,
            conflict_retry_attempts=settings.conflict_retry_attempts,
        ),
        escrow=escrow,
        refunds=refunds,
        disputes=disputes,
        webhooks=WebhookIngestor(
            uow_factory,
            coordinator,
            escrow,
            metrics,
            marker_ttl_seconds=settings.webhook_marker_ttl_days * 24 * 3600,
            conflict_retry_attempts=settings.conflict_retry_attempts,
        ),
        reporting=ReportingService(uow_factory),
        scheduler=SweepScheduler(
            escrow,
            disputes,
            release_interval_seconds=settings.escrow_release_interval_seconds,
            resolve_interval_seconds=settings.dispute_resolve_interval_seconds,
        ),
        gateway=gateway,
        metrics=metrics,
    )
