"""Unit tests for import-row parsing and column detection."""

from datetime import UTC, datetime, timedelta

import pytest

from billing_core.ingestion.billing_row_parser import (
    detect_column_mapping,
    map_row,
    parse_amount,
    parse_status,
    parse_timestamp,
)
from billing_core.storage.errors import BatchInputError, RowValidationError
from billing_core.storage.models.billing import BillingStatus, ColumnMapping


class TestParseAmount:
    """Tests for the major/minor unit heuristic."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("0,99", 99),
            ("4.99 EUR", 499),
            ("€ 1,5", 150),
            ("5", 500),
            ("250", 250),
            ("100", 100),
            ("0", 0),
            ("-0,99", -99),
        ],
    )
    def test_amounts(self, raw: str, expected: int) -> None:
        assert parse_amount(raw) == expected

    def test_threshold_zero_disables_scaling(self) -> None:
        assert parse_amount("50", major_unit_threshold=0) == 50

    @pytest.mark.parametrize("raw", ["abc", "", "EUR"])
    def test_invalid_amount_is_rejected(self, raw: str) -> None:
        with pytest.raises(RowValidationError) as exc_info:
            parse_amount(raw)
        assert exc_info.value.field == "amount"


class TestParseStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Refunded", BillingStatus.REFUNDED),
            ("CHARGEBACK", BillingStatus.CHARGEBACK),
            ("payment failed", BillingStatus.FAILED),
            ("Cancelled", BillingStatus.CANCELLED),
            ("pending", BillingStatus.PENDING),
            ("OK", BillingStatus.BILLED),
            (None, BillingStatus.BILLED),
        ],
    )
    def test_keywords(self, raw: str | None, expected: BillingStatus) -> None:
        assert parse_status(raw) == expected


class TestParseTimestamp:
    expected = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)

    @pytest.mark.parametrize(
        "raw",
        [
            "2024-03-01T10:00:00Z",
            "2024-03-01 11:00:00 CET",
            "2024-03-01T12:00:00+02:00",
            "01.03.2024 10:00",
            "03/01/2024 10:00:00",
            "1709287200",
            "1709287200000",
        ],
    )
    def test_formats(self, raw: str) -> None:
        assert parse_timestamp(raw) == self.expected

    def test_naive_datetime_is_taken_as_utc(self) -> None:
        assert parse_timestamp(datetime(2024, 3, 1, 10, 0)) == self.expected

    @pytest.mark.parametrize("raw", ["not a date", "", None])
    def test_unparseable_falls_back_to_now(self, raw: str | None) -> None:
        result = parse_timestamp(raw)
        assert result.tzinfo is not None
        assert abs(datetime.now(UTC) - result) < timedelta(seconds=5)


class TestDetectColumnMapping:
    def test_english_headers(self) -> None:
        mapping = detect_column_mapping(["Phone Number", "Transaction ID", "Amount", "Status", "Date"])
        assert mapping.msisdn == "Phone Number"
        assert mapping.transaction_id == "Transaction ID"
        assert mapping.amount == "Amount"
        assert mapping.status == "Status"
        assert mapping.date == "Date"
        assert mapping.currency is None

    def test_german_headers(self) -> None:
        """Each column is claimed by at most one field."""
        mapping = detect_column_mapping(["Rufnummer", "Betrag", "Datum", "ID", "Produkt"])
        assert mapping.msisdn == "Rufnummer"
        assert mapping.amount == "Betrag"
        assert mapping.date == "Datum"
        assert mapping.transaction_id == "ID"
        assert mapping.product_code == "Produkt"

    def test_missing_msisdn_column(self) -> None:
        with pytest.raises(BatchInputError):
            detect_column_mapping(["foo", "bar"])


class TestMapRow:
    """Tests for row validation against the default column mapping."""

    mapping = ColumnMapping()

    def _row(self, **overrides: str) -> dict[str, str]:
        row = {
            "msisdn": "0170 1234567",
            "transaction_id": "TXN-1",
            "amount": "0,99",
            "status": "billed",
            "date": "2024-03-01T10:00:00Z",
        }
        row.update(overrides)
        return row

    def test_valid_row(self) -> None:
        parsed = map_row(self._row(), self.mapping)
        assert parsed.normalized_msisdn == "491701234567"
        assert parsed.msisdn == "0170 1234567"
        assert parsed.amount == 99
        assert parsed.currency == "EUR"
        assert parsed.status == BillingStatus.BILLED
        assert parsed.event_time == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
        assert parsed.raw["transaction_id"] == "TXN-1"

    @pytest.mark.parametrize(
        ("overrides", "message", "field"),
        [
            ({"msisdn": ""}, "Missing MSISDN", "msisdn"),
            ({"transaction_id": "  "}, "Missing transaction id", "transaction_id"),
            ({"amount": ""}, "Missing amount", "amount"),
        ],
    )
    def test_missing_required_fields(self, overrides: dict[str, str], message: str, field: str) -> None:
        with pytest.raises(RowValidationError) as exc_info:
            map_row(self._row(**overrides), self.mapping)
        assert exc_info.value.message == message
        assert exc_info.value.field == field

    def test_invalid_number_is_masked_in_message(self) -> None:
        """The rejected number never appears in clear text."""
        with pytest.raises(RowValidationError) as exc_info:
            map_row(self._row(msisdn="12345"), self.mapping)
        assert exc_info.value.message.startswith("Invalid phone number")
        assert "12345" not in exc_info.value.message

    def test_unparseable_amount(self) -> None:
        with pytest.raises(RowValidationError) as exc_info:
            map_row(self._row(amount="n/a"), self.mapping)
        assert exc_info.value.field == "amount"
