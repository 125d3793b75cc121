from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError

from escrow_service.application.concurrency import retry_on_conflict
from escrow_service.application.ports import PaymentGateway
from escrow_service.application.unit_of_work import UnitOfWorkFactory
from escrow_service.domain.exceptions import (
    InvalidAmountError,
    InvalidStateError,
    ResourceNotFoundError,
    SignatureVerificationError,
)
from escrow_service.domain.models import ActorType, Payment, StatusChange, Transaction
from escrow_service.domain.status import PaymentStatus
from escrow_service.infrastructure.gateway import to_minor_units
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()


@dataclass
class CreateOrderCommand:
    idempotency_key: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str | None = None
    reference_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CreateOrderResult:
    payment: Payment
    replayed: bool = False


class PaymentService:
    """Order creation, client-side verification and read access to payments."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        metrics: EscrowMetrics,
        hold_days: int = 7,
        commission_percent: Decimal = Decimal("10.0"),
        min_commission: Decimal = Decimal("1.00"),
        max_payment_amount: Decimal = Decimal("10000000.00"),
        default_currency: str = "INR",
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._metrics = metrics
        self._hold_days = hold_days
        self._commission_percent = commission_percent
        self._min_commission = min_commission
        self._max_payment_amount = max_payment_amount
        self._default_currency = default_currency
        self._retry_attempts = conflict_retry_attempts

    async def create_order(self, cmd: CreateOrderCommand) -> CreateOrderResult:
        log = logger.bind(
            idempotency_key=cmd.idempotency_key,
            payer_id=cmd.payer_id,
            payee_id=cmd.payee_id,
            amount=str(cmd.amount),
        )

        self._validate_order(cmd)
        currency = (cmd.currency or self._default_currency).upper()

        try:
            async with self._uow_factory() as uow:
                existing = await uow.payments.get_by_idempotency_key(cmd.idempotency_key)
                if existing is not None:
                    log.info("idempotent_replay", payment_id=existing.id)
                    return CreateOrderResult(payment=existing, replayed=True)

                payment = Payment.create(
                    idempotency_key=cmd.idempotency_key,
                    payer_id=cmd.payer_id,
                    payee_id=cmd.payee_id,
                    amount=cmd.amount,
                    currency=currency,
                    hold_days=self._hold_days,
                    reference_id=cmd.reference_id,
                    description=cmd.description,
                    metadata=cmd.metadata,
                )
                payment.apply_commission(self._commission_percent, self._min_commission)

                order = await self._gateway.create_order(
                    to_minor_units(payment.amount),
                    payment.currency,
                    receipt=payment.id,
                    notes={"payment_id": payment.id, "reference_id": payment.reference_id or ""},
                )
                payment.gateway_order_id = order.id

                await uow.payments.add(payment)
                await uow.commit()
        except IntegrityError:
            async with self._uow_factory() as uow:
                existing = await uow.payments.get_by_idempotency_key(cmd.idempotency_key)
            if existing is None:
                raise
            log.info("idempotent_replay_after_race", payment_id=existing.id)
            return CreateOrderResult(payment=existing, replayed=True)

        log.info(
            "payment_order_created",
            payment_id=payment.id,
            gateway_order_id=payment.gateway_order_id,
            platform_commission=str(payment.platform_commission),
            payee_payout=str(payment.payee_payout),
        )
        return CreateOrderResult(payment=payment)

    def _validate_order(self, cmd: CreateOrderCommand) -> None:
        if cmd.amount <= 0:
            raise InvalidAmountError(cmd.amount, "amount must be positive")
        if cmd.amount > self._max_payment_amount:
            raise InvalidAmountError(cmd.amount, f"amount exceeds the maximum of {self._max_payment_amount}")
        to_minor_units(cmd.amount)
        if cmd.payer_id == cmd.payee_id:
            raise InvalidStateError("Payer and payee must be different parties")

    async def verify_payment(
        self,
        payment_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        actor: str,
    ) -> Payment:
        """Check the client's checkout signature.

        Advisory only: it may move CREATED -> AUTHORIZED, but capture and
        escrow are driven exclusively by the gateway webhook.
        """
        log = logger.bind(payment_id=payment_id, gateway_payment_id=gateway_payment_id)

        if not self._gateway.verify_signature(gateway_order_id, gateway_payment_id, signature):
            log.warning("payment_signature_invalid")
            raise SignatureVerificationError(payment_id)

        async def record() -> tuple[Payment, StatusChange | None]:
            async with self._uow_factory() as uow:
                payment = await uow.payments.get(payment_id)
                if payment is None:
                    raise ResourceNotFoundError("Payment", payment_id)
                if payment.gateway_order_id != gateway_order_id:
                    raise InvalidStateError(
                        f"Order {gateway_order_id} does not belong to payment {payment_id}",
                        payment_id,
                    )

                payment.gateway_signature = signature
                payment.gateway_payment_id = payment.gateway_payment_id or gateway_payment_id
                change = None
                if payment.status == PaymentStatus.CREATED:
                    change = payment.transition_to(
                        PaymentStatus.AUTHORIZED,
                        "Checkout signature verified",
                        actor,
                        ActorType.USER,
                    )

                await uow.payments.update(payment)
                await uow.commit()
                return payment, change

        payment, change = await retry_on_conflict(record, self._retry_attempts)
        if change is not None:
            self._metrics.record_transitions([change])
        log.info("payment_verified", status=payment.status.value)
        return payment

    async def get_payment(self, payment_id: str) -> Payment:
        async with self._uow_factory() as uow:
            payment = await uow.payments.get(payment_id)
        if payment is None:
            raise ResourceNotFoundError("Payment", payment_id)
        return payment

    async def get_transactions(self, payment_id: str) -> list[Transaction]:
        async with self._uow_factory() as uow:
            if await uow.payments.get(payment_id) is None:
                raise ResourceNotFoundError("Payment", payment_id)
            return await uow.transactions.list_by_payment(payment_id)
