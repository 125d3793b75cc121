"""Unit tests for EscrowMetrics."""

import pytest
from prometheus_client import CollectorRegistry

from escrow_service.domain.models import ActorType, StatusChange
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.metrics import EscrowMetrics
from tests.conftest import NOW


class TestEscrowMetrics:
    """Tests for EscrowMetrics collectors and helpers."""

    def test_registries_are_isolated(self) -> None:
        """Two instances on separate registries do not collide or share counts."""
        first = EscrowMetrics(registry=CollectorRegistry())
        second = EscrowMetrics(registry=CollectorRegistry())

        first.settlements.inc()

        assert first.registry.get_sample_value("escrow_settlements_total") == 1
        assert second.registry.get_sample_value("escrow_settlements_total") == 0

    def test_record_transitions(self, metrics: EscrowMetrics) -> None:
        changes = [
            StatusChange(None, PaymentStatus.CREATED, "created", "api", ActorType.USER, NOW),
            StatusChange(PaymentStatus.CAPTURED, PaymentStatus.IN_ESCROW, "held", "gateway", ActorType.WEBHOOK, NOW),
        ]

        metrics.record_transitions(changes)

        sample = metrics.registry.get_sample_value
        assert sample("escrow_payment_transitions_total", {"from_status": "NONE", "to_status": "CREATED"}) == 1
        assert sample("escrow_payment_transitions_total", {"from_status": "CAPTURED", "to_status": "IN_ESCROW"}) == 1

    def test_time_sweep_observes_on_error(self, metrics: EscrowMetrics) -> None:
        with pytest.raises(RuntimeError), metrics.time_sweep("auto_release"):
            raise RuntimeError("boom")

        assert metrics.registry.get_sample_value("escrow_sweep_duration_seconds_count", {"sweep": "auto_release"}) == 1

    def test_time_gateway_labels_outcome(self, metrics: EscrowMetrics) -> None:
        with metrics.time_gateway("create_order"):
            pass
        with pytest.raises(ValueError), metrics.time_gateway("create_order"):
            raise ValueError("bad")

        sample = metrics.registry.get_sample_value
        labels = {"operation": "create_order"}
        assert sample("escrow_gateway_request_duration_seconds_count", {**labels, "outcome": "success"}) == 1
        assert sample("escrow_gateway_request_duration_seconds_count", {**labels, "outcome": "error"}) == 1
