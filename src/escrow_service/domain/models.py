from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from ulid import ULID

from escrow_service.domain.exceptions import InvalidStateError
from escrow_service.domain.status import DisputeStatus, PaymentStatus, transition


CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.0001")


class ActorType(Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    WEBHOOK = "WEBHOOK"
    SCHEDULER = "SCHEDULER"
    ADMIN = "ADMIN"


class TransactionType(Enum):
    CAPTURE = "CAPTURE"
    ESCROW_HOLD = "ESCROW_HOLD"
    COMMISSION_DEDUCTION = "COMMISSION_DEDUCTION"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    SETTLEMENT = "SETTLEMENT"
    REFUND = "REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    COMMISSION_REVERSAL = "COMMISSION_REVERSAL"


class DisputeRole(Enum):
    PAYER = "PAYER"
    PAYEE = "PAYEE"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class CommissionSplit:
    rate: Decimal
    commission: Decimal
    payout: Decimal


def calculate_commission(amount: Decimal, percent: Decimal, minimum: Decimal) -> CommissionSplit:
    """Split ``amount`` into platform commission and payee payout.

    The rate is ``percent / 100`` at four decimal places and the commission is
    rounded half-up to cents, floored at ``minimum`` and capped at ``amount``.
    """
    rate = (percent / Decimal(100)).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
    commission = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    commission = min(max(commission, minimum), amount)
    return CommissionSplit(rate=rate, commission=commission, payout=amount - commission)


@dataclass(frozen=True)
class StatusChange:
    from_status: PaymentStatus | None
    to_status: PaymentStatus
    reason: str
    actor: str
    actor_type: ActorType
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "reason": self.reason,
            "actor": self.actor,
            "actor_type": self.actor_type.value,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        return cls(
            from_status=PaymentStatus(data["from_status"]) if data.get("from_status") else None,
            to_status=PaymentStatus(data["to_status"]),
            reason=data["reason"],
            actor=data["actor"],
            actor_type=ActorType(data["actor_type"]),
            at=datetime.fromisoformat(data["at"]),
        )


@dataclass
class EscrowDetails:
    hold_days: int
    escrow_started_at: datetime | None = None
    release_eligible_at: datetime | None = None
    auto_release_attempted: bool = False
    settlement_batch_id: str | None = None


@dataclass
class Payment:
    id: str
    idempotency_key: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    escrow: EscrowDetails
    reference_id: str | None = None
    platform_commission: Decimal = Decimal("0.00")
    payee_payout: Decimal = Decimal("0.00")
    refunded_amount: Decimal = Decimal("0.00")
    commission_reversed: Decimal = Decimal("0.00")
    commission_rate: Decimal | None = None
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    gateway_signature: str | None = None
    payment_method: str | None = None
    description: str | None = None
    refund_ids: list[str] = field(default_factory=list)
    status_history: list[StatusChange] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    authorized_at: datetime | None = None
    captured_at: datetime | None = None
    released_at: datetime | None = None
    settled_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        idempotency_key: str,
        payer_id: str,
        payee_id: str,
        amount: Decimal,
        currency: str,
        hold_days: int,
        reference_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "Payment":
        return cls(
            id=str(ULID()),
            idempotency_key=idempotency_key,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.CREATED,
            escrow=EscrowDetails(hold_days=hold_days),
            reference_id=reference_id,
            description=description,
            metadata=metadata or {},
        )

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount

    @property
    def has_commission(self) -> bool:
        return self.commission_rate is not None

    def apply_commission(self, percent: Decimal, minimum: Decimal) -> CommissionSplit:
        split = calculate_commission(self.amount, percent, minimum)
        self.commission_rate = split.rate
        self.platform_commission = split.commission
        self.payee_payout = split.payout
        return split

    def transition_to(
        self,
        new_status: PaymentStatus,
        reason: str,
        actor: str,
        actor_type: ActorType,
        now: datetime | None = None,
    ) -> StatusChange:
        """Move to ``new_status`` and append one audit entry.

        Raises InvalidTransitionError without touching the payment when the
        edge does not exist.
        """
        transition(self.status, new_status, self.id)
        now = now or datetime.now(UTC)

        change = StatusChange(
            from_status=self.status,
            to_status=new_status,
            reason=reason,
            actor=actor,
            actor_type=actor_type,
            at=now,
        )
        self.status_history.append(change)
        self.status = new_status
        self.updated_at = now

        match new_status:
            case PaymentStatus.AUTHORIZED:
                self.authorized_at = now
            case PaymentStatus.CAPTURED:
                self.captured_at = now
            case PaymentStatus.IN_ESCROW:
                self.escrow.escrow_started_at = now
                self.escrow.release_eligible_at = now + timedelta(days=self.escrow.hold_days)
            case PaymentStatus.RELEASED:
                self.released_at = now
            case PaymentStatus.SETTLED:
                self.settled_at = now
            case PaymentStatus.FAILED:
                self.failed_at = now
                self.failure_reason = reason
            case _:
                pass

        return change

    def is_eligible_for_auto_release(self, now: datetime) -> bool:
        return (
            self.status == PaymentStatus.IN_ESCROW
            and self.escrow.release_eligible_at is not None
            and now > self.escrow.release_eligible_at
            and not self.escrow.auto_release_attempted
        )

    def record_refund(self, refund_id: str, amount: Decimal) -> None:
        self.refunded_amount += amount
        if refund_id not in self.refund_ids:
            self.refund_ids.append(refund_id)


@dataclass
class Transaction:
    id: str
    payment_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    description: str | None = None
    external_reference: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        payment: Payment,
        type: TransactionType,
        amount: Decimal,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> "Transaction":
        return cls(
            id=str(ULID()),
            payment_id=payment.id,
            type=type,
            amount=amount,
            currency=payment.currency,
            description=description,
            external_reference=external_reference,
        )


@dataclass(frozen=True)
class Evidence:
    submitted_by: str
    submitted_by_role: DisputeRole
    description: str
    attachment_url: str | None = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "submitted_by": self.submitted_by,
            "submitted_by_role": self.submitted_by_role.value,
            "description": self.description,
            "attachment_url": self.attachment_url,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Evidence":
        return cls(
            submitted_by=data["submitted_by"],
            submitted_by_role=DisputeRole(data["submitted_by_role"]),
            description=data["description"],
            attachment_url=data.get("attachment_url"),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
        )


@dataclass
class Dispute:
    id: str
    payment_id: str
    raised_by: str
    raised_by_role: DisputeRole
    reason: str
    disputed_amount: Decimal
    status: DisputeStatus
    auto_resolve_at: datetime
    category: str | None = None
    evidence: list[Evidence] = field(default_factory=list)
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        payment_id: str,
        raised_by: str,
        raised_by_role: DisputeRole,
        reason: str,
        disputed_amount: Decimal,
        auto_resolve_days: int,
        category: str | None = None,
        now: datetime | None = None,
    ) -> "Dispute":
        now = now or datetime.now(UTC)
        return cls(
            id=str(ULID()),
            payment_id=payment_id,
            raised_by=raised_by,
            raised_by_role=raised_by_role,
            reason=reason,
            disputed_amount=disputed_amount,
            status=DisputeStatus.OPEN,
            auto_resolve_at=now + timedelta(days=auto_resolve_days),
            category=category,
            created_at=now,
            updated_at=now,
        )

    def _require_active(self, action: str) -> None:
        if not self.status.is_active:
            raise InvalidStateError(
                f"Cannot {action} dispute {self.id} in status {self.status.value}",
                self.payment_id,
            )

    def mark_under_review(self, now: datetime | None = None) -> None:
        if self.status != DisputeStatus.OPEN:
            raise InvalidStateError(
                f"Only OPEN disputes can be reviewed, dispute {self.id} is {self.status.value}",
                self.payment_id,
            )
        self.status = DisputeStatus.UNDER_REVIEW
        self.updated_at = now or datetime.now(UTC)

    def add_evidence(self, evidence: Evidence) -> None:
        self._require_active("add evidence to")
        self.evidence.append(evidence)
        self.updated_at = evidence.submitted_at

    def resolve(
        self,
        outcome: DisputeStatus,
        resolved_by: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> None:
        if not outcome.is_resolved:
            raise ValueError(f"{outcome.value} is not a resolution outcome")
        self._require_active("resolve")
        now = now or datetime.now(UTC)
        self.status = outcome
        self.resolved_by = resolved_by
        self.resolution_notes = notes
        self.resolved_at = now
        self.updated_at = now


@dataclass
class OutboxEvent:
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    published_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    dead_lettered_at: datetime | None = None

    @classmethod
    def create(
        cls,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> "OutboxEvent":
        return cls(
            id=str(ULID()),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
        )


@dataclass(frozen=True)
class RevenueTotals:
    total_count: int = 0
    gmv: Decimal = Decimal("0.00")
    net_revenue: Decimal = Decimal("0.00")
    escrow_balance: Decimal = Decimal("0.00")
    refunded: Decimal = Decimal("0.00")
    payouts: Decimal = Decimal("0.00")
    completed_count: int = 0
    refunded_count: int = 0
    failed_count: int = 0
