"""Outbox event names and payloads.

Amounts are serialized as strings so consumers never see float rounding.
"""

from typing import Any

from escrow_service.domain.models import Dispute, Payment


PAYMENT_AGGREGATE = "Payment"
DISPUTE_AGGREGATE = "Dispute"
WEBHOOK_AGGREGATE = "Webhook"

PAYMENT_CAPTURED = "PaymentCaptured"
PAYMENT_FAILED = "PaymentFailed"
ESCROW_RELEASED = "EscrowReleased"
PAYMENT_SETTLED = "PaymentSettled"
REFUND_PROCESSED = "RefundProcessed"
DISPUTE_RAISED = "DisputeRaised"
DISPUTE_RESOLVED = "DisputeResolved"
WEBHOOK_PROCESSING_FAILED = "WebhookProcessingFailed"


def payment_payload(payment: Payment, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "payment_id": payment.id,
        "reference_id": payment.reference_id,
        "payer_id": payment.payer_id,
        "payee_id": payment.payee_id,
        "status": payment.status.value,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "platform_commission": str(payment.platform_commission),
        "payee_payout": str(payment.payee_payout),
        "refunded_amount": str(payment.refunded_amount),
        "version": payment.version,
    }
    payload.update(extra)
    return payload


def dispute_payload(dispute: Dispute, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "dispute_id": dispute.id,
        "payment_id": dispute.payment_id,
        "status": dispute.status.value,
        "raised_by": dispute.raised_by,
        "raised_by_role": dispute.raised_by_role.value,
        "disputed_amount": str(dispute.disputed_amount),
        "resolved_by": dispute.resolved_by,
    }
    payload.update(extra)
    return payload
