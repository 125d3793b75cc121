from decimal import Decimal
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from escrow_service.domain.status import PaymentStatus


class DomainError(Exception):
    """Base exception for domain errors."""


class PaymentError(DomainError):
    """Base exception for payment engine errors.

    Every subclass carries a stable ``error_code`` so callers (HTTP layer,
    sweeps, webhook ingestion) can tell the failure kinds apart without
    parsing messages.
    """

    error_code = "PAYMENT_ERROR"

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        self.payment_id = payment_id
        super().__init__(message)


class InvalidTransitionError(PaymentError):
    """Raised when a payment status change is not an edge of the status graph."""

    error_code = "INVALID_TRANSITION"

    def __init__(
        self,
        from_status: "PaymentStatus",
        to_status: "PaymentStatus",
        payment_id: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid payment status transition: {from_status.value} -> {to_status.value}",
            payment_id,
        )


class LockConflictError(PaymentError):
    """Raised when another worker already holds the lock for an operation."""

    error_code = "LOCK_CONFLICT"

    def __init__(self, lock_key: str, payment_id: str | None = None) -> None:
        self.lock_key = lock_key
        super().__init__(f"Operation already in progress: {lock_key}", payment_id)


class ConcurrentModificationError(PaymentError):
    """Raised when an optimistic version check fails on save. Safe to retry with a fresh read."""

    error_code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: str, expected_version: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of {entity} {entity_id} (expected version {expected_version})",
            entity_id if entity == "Payment" else None,
        )


class AmountMismatchError(PaymentError):
    """Raised when a gateway-reported amount differs from the stored payment amount."""

    error_code = "AMOUNT_MISMATCH"

    def __init__(self, payment_id: str, expected_minor: int, actual_minor: int) -> None:
        self.expected_minor = expected_minor
        self.actual_minor = actual_minor
        super().__init__(
            f"Amount mismatch: expected={expected_minor}, got={actual_minor}",
            payment_id,
        )


class ResourceNotFoundError(PaymentError):
    """Raised when a payment or dispute cannot be found."""

    error_code = "NOT_FOUND"

    def __init__(self, resource: str, lookup: str) -> None:
        self.resource = resource
        self.lookup = lookup
        super().__init__(f"{resource} not found: {lookup}")


class InvalidStateError(PaymentError):
    """Raised when the current status does not satisfy an operation's precondition."""

    error_code = "INVALID_STATE"


class InvalidAmountError(PaymentError):
    """Raised when a payment, refund or dispute amount is invalid."""

    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Decimal, reason: str, payment_id: str | None = None) -> None:
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}", payment_id)


class DuplicateDisputeError(PaymentError):
    """Raised when a payment already has an open dispute."""

    error_code = "DUPLICATE_DISPUTE"

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"A dispute is already open for payment {payment_id}", payment_id)


class DuplicateGatewayReferenceError(PaymentError):
    """Raised when a gateway payment id, signature or refund id is already bound to another record."""

    error_code = "DUPLICATE_GATEWAY_REFERENCE"

    def __init__(self, field: str, value: str, payment_id: str | None = None) -> None:
        self.field = field
        self.value = value
        super().__init__(f"{field} {value} is already recorded on another payment", payment_id)


class ExternalGatewayError(PaymentError):
    """Raised when the payment gateway rejects a call or does not answer in time."""

    error_code = "GATEWAY_ERROR"

    def __init__(self, operation: str, message: str, payment_id: str | None = None) -> None:
        self.operation = operation
        super().__init__(f"Gateway {operation} failed: {message}", payment_id)


class CoordinatorUnavailableError(PaymentError):
    """Raised when the lock/marker store cannot be reached. Operations fail closed."""

    error_code = "COORDINATOR_UNAVAILABLE"

    def __init__(self, operation: str, key: str) -> None:
        self.operation = operation
        self.key = key
        super().__init__(f"Idempotency store unavailable during {operation} for {key}")


class SignatureVerificationError(PaymentError):
    """Raised when a client-supplied gateway signature does not verify."""

    error_code = "INVALID_SIGNATURE"

    def __init__(self, payment_id: str | None = None) -> None:
        super().__init__("Payment signature verification failed", payment_id)
