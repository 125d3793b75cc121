"""Payment status graph.

```
CREATED -> AUTHORIZED -> CAPTURED -> IN_ESCROW -> RELEASED -> SETTLED
                                         |            |          |
                                    DISPUTE_OPEN   REFUND_REQUESTED <-+
                                     |        |        |              |
                              DISPUTE_WON  DISPUTE_LOST  PARTIALLY_REFUNDED
                                  |                  \\   |
                               RELEASED               REFUNDED
```
"""

from enum import Enum

from escrow_service.domain.exceptions import InvalidTransitionError


class PaymentStatus(Enum):
    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    IN_ESCROW = "IN_ESCROW"
    RELEASED = "RELEASED"
    SETTLED = "SETTLED"
    DISPUTE_OPEN = "DISPUTE_OPEN"
    DISPUTE_WON = "DISPUTE_WON"
    DISPUTE_LOST = "DISPUTE_LOST"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_disputed(self) -> bool:
        return self in (PaymentStatus.DISPUTE_OPEN, PaymentStatus.DISPUTE_WON, PaymentStatus.DISPUTE_LOST)

    @property
    def is_refundable(self) -> bool:
        return self in REFUNDABLE_STATUSES

    @property
    def is_refund_in_progress(self) -> bool:
        return self in (PaymentStatus.REFUND_REQUESTED, PaymentStatus.PARTIALLY_REFUNDED)


_S = PaymentStatus

TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    _S.CREATED: frozenset({_S.AUTHORIZED, _S.FAILED, _S.CANCELLED, _S.EXPIRED}),
    _S.AUTHORIZED: frozenset({_S.CAPTURED, _S.FAILED, _S.CANCELLED}),
    _S.CAPTURED: frozenset({_S.IN_ESCROW, _S.FAILED}),
    _S.IN_ESCROW: frozenset({_S.RELEASED, _S.DISPUTE_OPEN, _S.REFUND_REQUESTED}),
    _S.RELEASED: frozenset({_S.SETTLED, _S.REFUND_REQUESTED}),
    _S.SETTLED: frozenset({_S.REFUND_REQUESTED}),
    _S.DISPUTE_OPEN: frozenset({_S.DISPUTE_WON, _S.DISPUTE_LOST}),
    _S.DISPUTE_WON: frozenset({_S.RELEASED}),
    _S.DISPUTE_LOST: frozenset({_S.REFUND_REQUESTED, _S.REFUNDED}),
    _S.REFUND_REQUESTED: frozenset({_S.PARTIALLY_REFUNDED, _S.REFUNDED, _S.FAILED}),
    _S.PARTIALLY_REFUNDED: frozenset({_S.REFUND_REQUESTED, _S.REFUNDED}),
    _S.REFUNDED: frozenset(),
    _S.FAILED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.EXPIRED: frozenset(),
}

INITIAL_STATUS = PaymentStatus.CREATED

TERMINAL_STATUSES = frozenset({_S.REFUNDED, _S.FAILED, _S.CANCELLED, _S.EXPIRED})

REFUNDABLE_STATUSES = frozenset({_S.IN_ESCROW, _S.RELEASED, _S.SETTLED, _S.DISPUTE_LOST})


def can_transition(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def transition(
    from_status: PaymentStatus,
    to_status: PaymentStatus,
    payment_id: str | None = None,
) -> PaymentStatus:
    """Return ``to_status`` if the edge exists, otherwise raise InvalidTransitionError."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status, payment_id)
    return to_status


class DisputeStatus(Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_PAYER_FAVOR = "RESOLVED_PAYER_FAVOR"
    RESOLVED_PAYEE_FAVOR = "RESOLVED_PAYEE_FAVOR"
    AUTO_RESOLVED = "AUTO_RESOLVED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)

    @property
    def is_resolved(self) -> bool:
        return self in (
            DisputeStatus.RESOLVED_PAYER_FAVOR,
            DisputeStatus.RESOLVED_PAYEE_FAVOR,
            DisputeStatus.AUTO_RESOLVED,
        )
