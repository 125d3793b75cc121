"""Unit tests for environment-driven settings."""

import os
from decimal import Decimal
from unittest.mock import patch

from escrow_service.config import Settings


class TestSettings:
    """Tests for Settings defaults and overrides."""

    def test_escrow_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.escrow_hold_days == 7
        assert settings.dispute_auto_resolve_days == 14
        assert settings.commission_percent == Decimal("10.0")
        assert settings.min_commission == Decimal("1.00")
        assert settings.default_currency == "INR"
        assert settings.lock_ttl_seconds == 30

    def test_outbox_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.outbox_batch_size == 100
        assert settings.outbox_max_retries == 5
        assert settings.outbox_base_delay_seconds <= settings.outbox_max_delay_seconds
        assert settings.kafka_topic_prefix == "escrow"

    def test_overrides_from_env(self) -> None:
        """Money settings are parsed as Decimal, not float."""
        env_vars = {
            "ESCROW_HOLD_DAYS": "3",
            "COMMISSION_PERCENT": "12.5",
            "MIN_COMMISSION": "2.50",
            "GATEWAY_WEBHOOK_SECRET": "whsec_env",
            "SCHEDULER_ENABLED": "false",
            "LOG_FORMAT": "console",
        }

        with patch.dict(os.environ, env_vars, clear=False):
            settings = Settings(_env_file=None)

        assert settings.escrow_hold_days == 3
        assert settings.commission_percent == Decimal("12.5")
        assert settings.min_commission == Decimal("2.50")
        assert settings.gateway_webhook_secret == "whsec_env"
        assert settings.scheduler_enabled is False
        assert settings.log_format == "console"
