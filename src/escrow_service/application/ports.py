from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount_minor: int
    currency: str
    receipt: str
    status: str


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_id: str
    amount_minor: int
    status: str


class PaymentGateway(Protocol):
    """Card/UPI gateway. Amounts cross this boundary in minor units."""

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder: ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool: ...

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool: ...

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount_minor: int,
        reason: str | None = None,
    ) -> GatewayRefund: ...


class IdempotencyCoordinator(Protocol):
    """Named locks and "seen event" markers shared by every worker.

    Implementations raise CoordinatorUnavailableError when the backing store
    cannot answer; callers must not proceed with a money-moving step then.
    """

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool: ...

    async def release_lock(self, key: str, owner: str) -> bool: ...

    async def mark_processed(self, event_key: str, ttl_seconds: int | None = None) -> bool: ...
