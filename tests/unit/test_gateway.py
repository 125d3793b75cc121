"""Unit tests for the Razorpay gateway client."""

import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from escrow_service.domain.exceptions import ExternalGatewayError, InvalidAmountError
from escrow_service.infrastructure.gateway import RazorpayGateway, from_minor_units, to_minor_units
from escrow_service.infrastructure.metrics import EscrowMetrics


KEY_SECRET = "key_secret_test"
WEBHOOK_SECRET = "whsec_test"


def make_gateway(handler, metrics: EscrowMetrics | None = None) -> RazorpayGateway:
    client = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return RazorpayGateway(
        key_id="rzp_test",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        metrics=metrics,
        http_client=client,
    )


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class TestMinorUnits:
    """Tests for amount conversion at the gateway boundary."""

    def test_to_minor_units(self) -> None:
        assert to_minor_units(Decimal("5000.00")) == 500000
        assert to_minor_units(Decimal("0.01")) == 1

    def test_sub_cent_amounts_rejected(self) -> None:
        """Amounts with more than two decimals are not silently rounded."""
        with pytest.raises(InvalidAmountError):
            to_minor_units(Decimal("10.005"))

    def test_from_minor_units(self) -> None:
        assert from_minor_units(450000) == Decimal("4500.00")


class TestSignatures:
    """Tests for HMAC-SHA256 signature checks."""

    def test_payment_signature_valid(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200))
        signature = sign(KEY_SECRET, b"order_1|pay_1")

        assert gateway.verify_signature("order_1", "pay_1", signature) is True

    def test_payment_signature_invalid(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200))

        assert gateway.verify_signature("order_1", "pay_1", "deadbeef") is False

    def test_webhook_signature_over_raw_body(self) -> None:
        """Webhook signatures are computed over the exact request bytes."""
        gateway = make_gateway(lambda request: httpx.Response(200))
        body = b'{"event":"payment.captured","payload":{}}'

        assert gateway.verify_webhook_signature(body, sign(WEBHOOK_SECRET, body)) is True
        assert gateway.verify_webhook_signature(body + b" ", sign(WEBHOOK_SECRET, body)) is False

    def test_empty_webhook_signature_rejected(self) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200))

        assert gateway.verify_webhook_signature(b"{}", "") is False


class TestRazorpayGateway:
    """Tests for order and refund calls."""

    @pytest.mark.asyncio
    async def test_create_order(self) -> None:
        """Orders are posted in minor units and parsed from the response."""
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "order_abc",
                    "amount": body["amount"],
                    "currency": body["currency"],
                    "receipt": body["receipt"],
                    "status": "created",
                },
            )

        gateway = make_gateway(handler)

        order = await gateway.create_order(500000, "INR", "pay-1", notes={"payer_id": "payer-1"})

        assert order.id == "order_abc"
        assert order.amount_minor == 500000
        assert order.receipt == "pay-1"
        assert captured[0].url.path == "/v1/orders"
        assert json.loads(captured[0].content)["notes"] == {"payer_id": "payer-1"}

    @pytest.mark.asyncio
    async def test_create_refund(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1/refund"
            return httpx.Response(
                200,
                json={"id": "rfnd_1", "payment_id": "pay_1", "amount": 100000, "status": "processed"},
            )

        gateway = make_gateway(handler)

        refund = await gateway.create_refund("pay_1", 100000, reason="customer request")

        assert refund.id == "rfnd_1"
        assert refund.amount_minor == 100000

    @pytest.mark.asyncio
    async def test_http_error_raises_gateway_error(self) -> None:
        """Non-2xx answers become ExternalGatewayError."""
        gateway = make_gateway(lambda request: httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR"}}))

        with pytest.raises(ExternalGatewayError, match="HTTP 400") as exc_info:
            await gateway.create_refund("pay_1", 100000)

        assert exc_info.value.operation == "create_refund"
        assert exc_info.value.error_code == "GATEWAY_ERROR"

    @pytest.mark.asyncio
    async def test_timeout_raises_gateway_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(ExternalGatewayError, match="timed out"):
            await gateway.create_order(100, "INR", "pay-1")

    @pytest.mark.asyncio
    async def test_transport_error_raises_gateway_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(ExternalGatewayError):
            await gateway.create_order(100, "INR", "pay-1")

    @pytest.mark.asyncio
    async def test_request_duration_recorded(self, metrics: EscrowMetrics) -> None:
        """Gateway calls are timed with their outcome."""
        ok = make_gateway(
            lambda request: httpx.Response(200, json={"id": "order_1", "amount": 100, "currency": "INR"}),
            metrics=metrics,
        )
        failing = make_gateway(lambda request: httpx.Response(502), metrics=metrics)

        await ok.create_order(100, "INR", "pay-1")
        with pytest.raises(ExternalGatewayError):
            await failing.create_order(100, "INR", "pay-2")

        count = metrics.registry.get_sample_value
        assert count("escrow_gateway_request_duration_seconds_count", {"operation": "create_order", "outcome": "success"}) == 1
        assert count("escrow_gateway_request_duration_seconds_count", {"operation": "create_order", "outcome": "error"}) == 1
