"""Repository implementations."""

from escrow_service.infrastructure.repositories.dispute import DisputeRepository
from escrow_service.infrastructure.repositories.outbox import OutboxRepository
from escrow_service.infrastructure.repositories.payment import PaymentRepository
from escrow_service.infrastructure.repositories.transaction import TransactionRepository


__all__ = [
    "DisputeRepository",
    "OutboxRepository",
    "PaymentRepository",
    "TransactionRepository",
]
