"""Domain layer - payment, escrow and dispute entities and rules."""

from escrow_service.domain.exceptions import (
    AmountMismatchError,
    ConcurrentModificationError,
    CoordinatorUnavailableError,
    DomainError,
    DuplicateDisputeError,
    DuplicateGatewayReferenceError,
    ExternalGatewayError,
    InvalidAmountError,
    InvalidStateError,
    InvalidTransitionError,
    LockConflictError,
    PaymentError,
    ResourceNotFoundError,
    SignatureVerificationError,
)
from escrow_service.domain.models import (
    ActorType,
    CommissionSplit,
    Dispute,
    DisputeRole,
    EscrowDetails,
    Evidence,
    OutboxEvent,
    Payment,
    RevenueTotals,
    StatusChange,
    Transaction,
    TransactionType,
    calculate_commission,
)
from escrow_service.domain.status import (
    DisputeStatus,
    PaymentStatus,
    can_transition,
    transition,
)


__all__ = [
    "ActorType",
    "AmountMismatchError",
    "CommissionSplit",
    "ConcurrentModificationError",
    "CoordinatorUnavailableError",
    "Dispute",
    "DisputeRole",
    "DisputeStatus",
    "DomainError",
    "DuplicateDisputeError",
    "DuplicateGatewayReferenceError",
    "EscrowDetails",
    "Evidence",
    "ExternalGatewayError",
    "InvalidAmountError",
    "InvalidStateError",
    "InvalidTransitionError",
    "LockConflictError",
    "OutboxEvent",
    "Payment",
    "PaymentError",
    "PaymentStatus",
    "ResourceNotFoundError",
    "RevenueTotals",
    "SignatureVerificationError",
    "StatusChange",
    "Transaction",
    "TransactionType",
    "calculate_commission",
    "can_transition",
    "transition",
]
