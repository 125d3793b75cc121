from decimal import Decimal

from escrow_service.logging import redact_secrets, stringify_amounts


class TestProcessors:
    def test_secrets_are_redacted(self) -> None:
        event = {"event": "webhook_received", "signature": "abc123", "event_id": "evt_1"}

        result = redact_secrets(None, "info", event)

        assert result == {"event": "webhook_received", "signature": "***", "event_id": "evt_1"}

    def test_decimal_amounts_become_strings(self) -> None:
        event = {"event": "escrow_released", "commission": Decimal("500.00"), "attempt": 1}

        result = stringify_amounts(None, "info", event)

        assert result["commission"] == "500.00"
        assert result["attempt"] == 1
