from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Self

from pydantic import BaseModel, Field

from escrow_service.application.reporting import RevenueStats
from escrow_service.domain import Dispute, DisputeRole, Payment, StatusChange, Transaction


class CreateOrderRequest(BaseModel):
    idempotency_key: str = Field(min_length=1, max_length=255)
    payer_id: str = Field(min_length=1)
    payee_id: str = Field(min_length=1)
    amount: Decimal
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    reference_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str
    gateway_payment_id: str
    signature: str


class SettleRequest(BaseModel):
    batch_id: str = Field(min_length=1)


class ReleaseRequest(BaseModel):
    reason: str = "Escrow released to payee"


class RefundRequest(BaseModel):
    amount: Decimal
    reason: str | None = None


class RaiseDisputeRequest(BaseModel):
    reason: str = Field(min_length=1)
    category: str | None = None
    disputed_amount: Decimal | None = None


class EvidenceRequest(BaseModel):
    description: str = Field(min_length=1)
    attachment_url: str | None = None


class ResolveDisputeRequest(BaseModel):
    in_favor_of: DisputeRole
    notes: str | None = None


class StatusChangeResponse(BaseModel):
    from_status: str | None
    to_status: str
    reason: str
    actor: str
    actor_type: str
    at: datetime

    @classmethod
    def from_domain(cls, change: StatusChange) -> Self:
        return cls(
            from_status=change.from_status.value if change.from_status else None,
            to_status=change.to_status.value,
            reason=change.reason,
            actor=change.actor,
            actor_type=change.actor_type.value,
            at=change.at,
        )


class PaymentResponse(BaseModel):
    id: str
    idempotency_key: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str
    status: str
    platform_commission: Decimal
    payee_payout: Decimal
    refunded_amount: Decimal
    commission_reversed: Decimal
    gateway_order_id: str | None
    gateway_payment_id: str | None
    reference_id: str | None
    description: str | None
    hold_days: int
    release_eligible_at: datetime | None
    auto_release_attempted: bool
    settlement_batch_id: str | None
    failure_reason: str | None
    status_history: list[StatusChangeResponse]
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, payment: Payment) -> Self:
        return cls(
            id=payment.id,
            idempotency_key=payment.idempotency_key,
            payer_id=payment.payer_id,
            payee_id=payment.payee_id,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status.value,
            platform_commission=payment.platform_commission,
            payee_payout=payment.payee_payout,
            refunded_amount=payment.refunded_amount,
            commission_reversed=payment.commission_reversed,
            gateway_order_id=payment.gateway_order_id,
            gateway_payment_id=payment.gateway_payment_id,
            reference_id=payment.reference_id,
            description=payment.description,
            hold_days=payment.escrow.hold_days,
            release_eligible_at=payment.escrow.release_eligible_at,
            auto_release_attempted=payment.escrow.auto_release_attempted,
            settlement_batch_id=payment.escrow.settlement_batch_id,
            failure_reason=payment.failure_reason,
            status_history=[StatusChangeResponse.from_domain(c) for c in payment.status_history],
            version=payment.version,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class CreateOrderResponse(BaseModel):
    payment: PaymentResponse
    replayed: bool


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: Decimal
    currency: str
    description: str | None
    external_reference: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, txn: Transaction) -> Self:
        return cls(
            id=txn.id,
            type=txn.type.value,
            amount=txn.amount,
            currency=txn.currency,
            description=txn.description,
            external_reference=txn.external_reference,
            created_at=txn.created_at,
        )


class EvidenceResponse(BaseModel):
    submitted_by: str
    submitted_by_role: str
    description: str
    attachment_url: str | None
    submitted_at: datetime


class DisputeResponse(BaseModel):
    id: str
    payment_id: str
    raised_by: str
    raised_by_role: str
    reason: str
    category: str | None
    disputed_amount: Decimal
    status: str
    evidence: list[EvidenceResponse]
    resolution_notes: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    auto_resolve_at: datetime
    version: int
    created_at: datetime

    @classmethod
    def from_domain(cls, dispute: Dispute) -> Self:
        return cls(
            id=dispute.id,
            payment_id=dispute.payment_id,
            raised_by=dispute.raised_by,
            raised_by_role=dispute.raised_by_role.value,
            reason=dispute.reason,
            category=dispute.category,
            disputed_amount=dispute.disputed_amount,
            status=dispute.status.value,
            evidence=[
                EvidenceResponse(
                    submitted_by=e.submitted_by,
                    submitted_by_role=e.submitted_by_role.value,
                    description=e.description,
                    attachment_url=e.attachment_url,
                    submitted_at=e.submitted_at,
                )
                for e in dispute.evidence
            ],
            resolution_notes=dispute.resolution_notes,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
            auto_resolve_at=dispute.auto_resolve_at,
            version=dispute.version,
            created_at=dispute.created_at,
        )


class RevenueStatsResponse(BaseModel):
    period_from: datetime
    period_to: datetime
    gross_merchandise_value: Decimal
    net_platform_revenue: Decimal
    escrow_balance: Decimal
    refunded_total: Decimal
    payee_payouts: Decimal
    completed_payments: int
    active_disputes: int
    refund_rate: Decimal
    failure_rate: Decimal

    @classmethod
    def from_domain(cls, stats: RevenueStats) -> Self:
        return cls(**asdict(stats))
