"""Unit tests for PII redaction and correlation IDs."""

from billing_core.common.logging_config import get_correlation_id, redact_pii, set_correlation_id


class TestRedactPii:
    """Tests for the structlog redaction processor."""

    def test_msisdn_in_message_is_redacted(self) -> None:
        event = redact_pii(None, "info", {"event": "charged 491701234567 for article-42"})
        assert event["event"] == "charged [REDACTED] for article-42"

    def test_spaced_number_is_redacted(self) -> None:
        event = redact_pii(None, "info", {"event": "identified +49 170 123 4567"})
        assert "170" not in event["event"]

    def test_pii_keys_are_redacted(self) -> None:
        event = redact_pii(None, "info", {"event": "lookup", "msisdn": "0170", "user_email": "max@example.com"})
        assert event["msisdn"] == "[REDACTED]"
        assert event["user_email"] == "[REDACTED]"

    def test_email_in_message(self) -> None:
        event = redact_pii(None, "info", {"event": "linked account max@example.com"})
        assert event["event"] == "linked account [REDACTED]"

    def test_dates_ids_and_numbers_survive(self) -> None:
        """Values that are not subscriber numbers are left alone."""
        event = redact_pii(
            None,
            "info",
            {
                "event": "batch 3f2a9c1e processed on 2024-03-01 with 1234 rows",
                "correlation_id": "d41d8cd98f00b204e9800998ecf8427e",
                "count": 491701234567,
            },
        )
        assert event["event"] == "batch 3f2a9c1e processed on 2024-03-01 with 1234 rows"
        assert event["correlation_id"] == "d41d8cd98f00b204e9800998ecf8427e"
        assert event["count"] == 491701234567


class TestCorrelationId:
    def test_set_then_get(self) -> None:
        set_correlation_id("req-123")
        assert get_correlation_id() == "req-123"
