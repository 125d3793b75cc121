import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from escrow_service.domain.models import StatusChange


DURATION_BUCKETS = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


class EscrowMetrics:
    """Prometheus collectors for the payment engines.

    Collectors are bound to ``registry`` so each engine graph (and each test)
    can own an isolated registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.transitions = Counter(
            "escrow_payment_transitions_total",
            "Payment status transitions",
            ["from_status", "to_status"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "escrow_webhook_events_total",
            "Gateway webhook events by outcome",
            ["event_type", "outcome"],
            registry=self.registry,
        )
        self.escrow_releases = Counter(
            "escrow_releases_total",
            "Escrow releases by trigger",
            ["trigger"],
            registry=self.registry,
        )
        self.settlements = Counter(
            "escrow_settlements_total",
            "Payments settled to payees",
            registry=self.registry,
        )
        self.refunds = Counter(
            "escrow_refunds_total",
            "Refunds by kind",
            ["kind"],
            registry=self.registry,
        )
        self.amount_mismatches = Counter(
            "escrow_amount_mismatches_total",
            "Captured amounts that did not match the stored payment amount",
            registry=self.registry,
        )
        self.lock_conflicts = Counter(
            "escrow_lock_conflicts_total",
            "Operations rejected because their lock was held",
            ["operation"],
            registry=self.registry,
        )
        self.disputes = Counter(
            "escrow_disputes_total",
            "Dispute lifecycle events",
            ["outcome"],
            registry=self.registry,
        )
        self.sweep_items = Counter(
            "escrow_sweep_items_total",
            "Items handled by scheduled sweeps",
            ["sweep", "outcome"],
            registry=self.registry,
        )
        self.sweep_duration = Histogram(
            "escrow_sweep_duration_seconds",
            "Scheduled sweep duration",
            ["sweep"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.gateway_request_duration = Histogram(
            "escrow_gateway_request_duration_seconds",
            "Payment gateway request duration",
            ["operation", "outcome"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.outbox_published = Counter(
            "outbox_events_published_total",
            "Total outbox events published",
            ["event_type"],
            registry=self.registry,
        )
        self.outbox_failed = Counter(
            "outbox_events_failed_total",
            "Total outbox events that failed to publish",
            ["event_type"],
            registry=self.registry,
        )
        self.outbox_dead_lettered = Counter(
            "outbox_events_dead_lettered_total",
            "Outbox events parked on the dead letter topic after exhausting retries",
            ["event_type"],
            registry=self.registry,
        )
        self.outbox_pending = Gauge(
            "outbox_pending_events",
            "Number of pending events in outbox",
            registry=self.registry,
        )

    def record_transitions(self, changes: list[StatusChange]) -> None:
        for change in changes:
            from_status = change.from_status.value if change.from_status else "NONE"
            self.transitions.labels(from_status=from_status, to_status=change.to_status.value).inc()

    @contextmanager
    def time_sweep(self, sweep: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.sweep_duration.labels(sweep=sweep).observe(time.perf_counter() - start)

    @contextmanager
    def time_gateway(self, operation: str) -> Iterator[None]:
        start = time.perf_counter()
        outcome = "error"
        try:
            yield
            outcome = "success"
        finally:
            self.gateway_request_duration.labels(operation=operation, outcome=outcome).observe(
                time.perf_counter() - start
            )
