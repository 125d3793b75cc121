import json
from datetime import datetime
from decimal import Decimal
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_service.domain.exceptions import ConcurrentModificationError, DuplicateGatewayReferenceError
from escrow_service.domain.models import EscrowDetails, Payment, RevenueTotals, StatusChange
from escrow_service.domain.status import PaymentStatus


PAYMENT_COLUMNS = """
    id, idempotency_key, payer_id, payee_id, reference_id, amount, currency,
    platform_commission, payee_payout, refunded_amount, commission_reversed,
    commission_rate, status, hold_days, escrow_started_at, release_eligible_at,
    auto_release_attempted, settlement_batch_id, gateway_order_id,
    gateway_payment_id, gateway_signature, payment_method, description,
    refund_ids, status_history, metadata, authorized_at, captured_at,
    released_at, settled_at, failed_at, failure_reason, version,
    created_at, updated_at
"""

# Unique index name -> payment attribute it guards.
GATEWAY_REFERENCE_INDEXES = {
    "ix_payments_gateway_order_id": "gateway_order_id",
    "uq_payments_gateway_payment_id": "gateway_payment_id",
    "uq_payments_gateway_signature": "gateway_signature",
}


def _raise_duplicate_reference(error: IntegrityError, payment: Payment) -> None:
    for index, field in GATEWAY_REFERENCE_INDEXES.items():
        if index in str(error.orig):
            raise DuplicateGatewayReferenceError(field, str(getattr(payment, field)), payment.id) from error


def load_json(value: Any) -> Any:
    """JSONB columns come back as text through raw SQL; tolerate both forms."""
    if isinstance(value, str | bytes):
        return json.loads(value)
    return value


def _row_to_payment(row: Any) -> Payment:
    return Payment(
        id=row.id,
        idempotency_key=row.idempotency_key,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        reference_id=row.reference_id,
        amount=row.amount,
        currency=row.currency,
        platform_commission=row.platform_commission,
        payee_payout=row.payee_payout,
        refunded_amount=row.refunded_amount,
        commission_reversed=row.commission_reversed,
        commission_rate=row.commission_rate,
        status=PaymentStatus(row.status),
        escrow=EscrowDetails(
            hold_days=row.hold_days,
            escrow_started_at=row.escrow_started_at,
            release_eligible_at=row.release_eligible_at,
            auto_release_attempted=row.auto_release_attempted,
            settlement_batch_id=row.settlement_batch_id,
        ),
        gateway_order_id=row.gateway_order_id,
        gateway_payment_id=row.gateway_payment_id,
        gateway_signature=row.gateway_signature,
        payment_method=row.payment_method,
        description=row.description,
        refund_ids=list(load_json(row.refund_ids) or []),
        status_history=[StatusChange.from_dict(item) for item in load_json(row.status_history) or []],
        metadata=dict(load_json(row.metadata) or {}),
        authorized_at=row.authorized_at,
        captured_at=row.captured_at,
        released_at=row.released_at,
        settled_at=row.settled_at,
        failed_at=row.failed_at,
        failure_reason=row.failure_reason,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _payment_params(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "idempotency_key": payment.idempotency_key,
        "payer_id": payment.payer_id,
        "payee_id": payment.payee_id,
        "reference_id": payment.reference_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "platform_commission": payment.platform_commission,
        "payee_payout": payment.payee_payout,
        "refunded_amount": payment.refunded_amount,
        "commission_reversed": payment.commission_reversed,
        "commission_rate": payment.commission_rate,
        "status": payment.status.value,
        "hold_days": payment.escrow.hold_days,
        "escrow_started_at": payment.escrow.escrow_started_at,
        "release_eligible_at": payment.escrow.release_eligible_at,
        "auto_release_attempted": payment.escrow.auto_release_attempted,
        "settlement_batch_id": payment.escrow.settlement_batch_id,
        "gateway_order_id": payment.gateway_order_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "gateway_signature": payment.gateway_signature,
        "payment_method": payment.payment_method,
        "description": payment.description,
        "refund_ids": json.dumps(payment.refund_ids),
        "status_history": json.dumps([change.to_dict() for change in payment.status_history]),
        "metadata": json.dumps(payment.metadata),
        "authorized_at": payment.authorized_at,
        "captured_at": payment.captured_at,
        "released_at": payment.released_at,
        "settled_at": payment.settled_at,
        "failed_at": payment.failed_at,
        "failure_reason": payment.failure_reason,
        "version": payment.version,
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


class PaymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _fetch_one(self, where: str, params: dict[str, Any]) -> Payment | None:
        result = await self._session.execute(
            text(f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE {where}"),
            params,
        )
        row = result.fetchone()
        if not row:
            return None
        return _row_to_payment(row)

    async def get(self, payment_id: str) -> Payment | None:
        return await self._fetch_one("id = :id", {"id": payment_id})

    async def get_by_idempotency_key(self, key: str) -> Payment | None:
        return await self._fetch_one("idempotency_key = :key", {"key": key})

    async def get_by_gateway_order_id(self, order_id: str) -> Payment | None:
        return await self._fetch_one("gateway_order_id = :order_id", {"order_id": order_id})

    async def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Payment | None:
        return await self._fetch_one(
            "gateway_payment_id = :gateway_payment_id",
            {"gateway_payment_id": gateway_payment_id},
        )

    async def add(self, payment: Payment) -> None:
        await self._session.execute(
            text("""
                INSERT INTO payments
                    (id, idempotency_key, payer_id, payee_id, reference_id, amount,
                     currency, platform_commission, payee_payout, refunded_amount,
                     commission_reversed, commission_rate, status, hold_days,
                     escrow_started_at, release_eligible_at, auto_release_attempted,
                     settlement_batch_id, gateway_order_id, gateway_payment_id,
                     gateway_signature, payment_method, description, refund_ids,
                     status_history, metadata, authorized_at, captured_at,
                     released_at, settled_at, failed_at, failure_reason, version,
                     created_at, updated_at)
                VALUES
                    (:id, :idempotency_key, :payer_id, :payee_id, :reference_id, :amount,
                     :currency, :platform_commission, :payee_payout, :refunded_amount,
                     :commission_reversed, :commission_rate, :status, :hold_days,
                     :escrow_started_at, :release_eligible_at, :auto_release_attempted,
                     :settlement_batch_id, :gateway_order_id, :gateway_payment_id,
                     :gateway_signature, :payment_method, :description, :refund_ids,
                     :status_history, :metadata, :authorized_at, :captured_at,
                     :released_at, :settled_at, :failed_at, :failure_reason, :version,
                     :created_at, :updated_at)
            """),
            _payment_params(payment),
        )

    async def update(self, payment: Payment) -> None:
        """Compare-and-swap on ``version``.

        Raises ConcurrentModificationError when another writer saved first.
        Raises DuplicateGatewayReferenceError when a gateway id or signature
        is already bound to another payment.
        On success the in-memory version is bumped to match the row.
        """
        params = _payment_params(payment)
        params["expected_version"] = payment.version
        try:
            result = cast(
                "CursorResult[Any]",
                await self._session.execute(
                    text("""
                        UPDATE payments
                        SET platform_commission = :platform_commission,
                            payee_payout = :payee_payout,
                            refunded_amount = :refunded_amount,
                            commission_reversed = :commission_reversed,
                            commission_rate = :commission_rate,
                            status = :status,
                            hold_days = :hold_days,
                            escrow_started_at = :escrow_started_at,
                            release_eligible_at = :release_eligible_at,
                            auto_release_attempted = :auto_release_attempted,
                            settlement_batch_id = :settlement_batch_id,
                            gateway_order_id = :gateway_order_id,
                            gateway_payment_id = :gateway_payment_id,
                            gateway_signature = :gateway_signature,
                            payment_method = :payment_method,
                            refund_ids = :refund_ids,
                            status_history = :status_history,
                            metadata = :metadata,
                            authorized_at = :authorized_at,
                            captured_at = :captured_at,
                            released_at = :released_at,
                            settled_at = :settled_at,
                            failed_at = :failed_at,
                            failure_reason = :failure_reason,
                            version = version + 1,
                            updated_at = :updated_at
                        WHERE id = :id AND version = :expected_version
                    """),
                    params,
                ),
            )
        except IntegrityError as e:
            _raise_duplicate_reference(e, payment)
            raise
        if (result.rowcount or 0) == 0:
            raise ConcurrentModificationError("Payment", payment.id, payment.version)
        payment.version += 1

    async def list_eligible_for_auto_release(self, now: datetime, limit: int = 500) -> list[Payment]:
        result = await self._session.execute(
            text(f"""
                SELECT {PAYMENT_COLUMNS}
                FROM payments
                WHERE status = 'IN_ESCROW'
                  AND release_eligible_at < :now
                  AND auto_release_attempted = FALSE
                ORDER BY release_eligible_at
                LIMIT :limit
            """),
            {"now": now, "limit": limit},
        )
        return [_row_to_payment(row) for row in result.fetchall()]

    async def revenue_totals(self, from_: datetime, to: datetime) -> RevenueTotals:
        """Aggregate money figures for payments created in ``[from_, to)``."""
        result = await self._session.execute(
            text("""
                SELECT
                    COUNT(*) AS total_count,
                    COALESCE(SUM(amount) FILTER (
                        WHERE status NOT IN ('CREATED', 'AUTHORIZED', 'FAILED', 'CANCELLED', 'EXPIRED')
                    ), 0) AS gmv,
                    COALESCE(SUM(platform_commission - commission_reversed) FILTER (
                        WHERE status NOT IN ('CREATED', 'AUTHORIZED', 'FAILED', 'CANCELLED', 'EXPIRED')
                    ), 0) AS net_revenue,
                    COALESCE(SUM(amount - refunded_amount) FILTER (
                        WHERE status IN ('IN_ESCROW', 'DISPUTE_OPEN', 'DISPUTE_WON')
                    ), 0) AS escrow_balance,
                    COALESCE(SUM(refunded_amount), 0) AS refunded,
                    COALESCE(SUM(payee_payout) FILTER (WHERE status IN ('RELEASED', 'SETTLED')), 0)
                        AS payouts,
                    COUNT(*) FILTER (WHERE status IN ('RELEASED', 'SETTLED')) AS completed_count,
                    COUNT(*) FILTER (WHERE status IN ('REFUNDED', 'PARTIALLY_REFUNDED')) AS refunded_count,
                    COUNT(*) FILTER (WHERE status = 'FAILED') AS failed_count
                FROM payments
                WHERE created_at >= :from_ AND created_at < :to
            """),
            {"from_": from_, "to": to},
        )
        row = result.fetchone()
        if not row:
            return RevenueTotals()
        return RevenueTotals(
            total_count=row.total_count,
            gmv=Decimal(row.gmv),
            net_revenue=Decimal(row.net_revenue),
            escrow_balance=Decimal(row.escrow_balance),
            refunded=Decimal(row.refunded),
            payouts=Decimal(row.payouts),
            completed_count=row.completed_count,
            refunded_count=row.refunded_count,
            failed_count=row.failed_count,
        )
