import contextlib
import hashlib
import hmac
from decimal import Decimal
from typing import Any

import httpx
import structlog

from escrow_service.application.ports import GatewayOrder, GatewayRefund
from escrow_service.domain.exceptions import ExternalGatewayError, InvalidAmountError
from escrow_service.infrastructure.metrics import EscrowMetrics


logger = structlog.get_logger()

MINOR_UNITS = Decimal(100)


def to_minor_units(amount: Decimal) -> int:
    """Exact conversion to paise/cents. Sub-cent amounts are rejected, never rounded."""
    minor = amount * MINOR_UNITS
    if minor != minor.to_integral_value():
        raise InvalidAmountError(amount, "amount has more than two decimal places")
    return int(minor)


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS).quantize(Decimal("0.01"))


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """
    Razorpay REST client.

    Orders and refunds go over HTTPS with basic auth; every call is bounded by
    ``timeout_seconds``. Transport failures, timeouts and non-2xx answers are
    raised as ExternalGatewayError.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        metrics: EscrowMetrics | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._metrics = metrics
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        body = await self._post(
            "create_order",
            "/orders",
            {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        logger.info("gateway_order_created", order_id=body["id"], receipt=receipt, amount_minor=amount_minor)
        return GatewayOrder(
            id=body["id"],
            amount_minor=int(body["amount"]),
            currency=body["currency"],
            receipt=body.get("receipt", receipt),
            status=body.get("status", "created"),
        )

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount_minor: int,
        reason: str | None = None,
    ) -> GatewayRefund:
        body = await self._post(
            "create_refund",
            f"/payments/{gateway_payment_id}/refund",
            {"amount": amount_minor, "notes": {"reason": reason or ""}},
        )
        logger.info(
            "gateway_refund_created",
            refund_id=body["id"],
            gateway_payment_id=gateway_payment_id,
            amount_minor=amount_minor,
        )
        return GatewayRefund(
            id=body["id"],
            payment_id=body.get("payment_id", gateway_payment_id),
            amount_minor=int(body["amount"]),
            status=body.get("status", "processed"),
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = _hmac_sha256(self._key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        if not signature or not self._webhook_secret:
            return False
        expected = _hmac_sha256(self._webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature)

    async def _post(self, operation: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        timer = self._metrics.time_gateway(operation) if self._metrics else contextlib.nullcontext()
        try:
            with timer:
                response = await self._client.post(path, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("gateway_timeout", operation=operation, path=path)
            raise ExternalGatewayError(operation, "timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "gateway_rejected",
                operation=operation,
                path=path,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise ExternalGatewayError(operation, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("gateway_transport_error", operation=operation, path=path, error=str(e))
            raise ExternalGatewayError(operation, str(e)) from e

        body: dict[str, Any] = response.json()
        return body
