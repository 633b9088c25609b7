"""Unit tests for domain models and errors."""

from decimal import Decimal

import pytest

from settlement_service.domain.exceptions import (
    BuyerBannedError,
    CaptureFailedError,
    DomainError,
    InvalidArgumentError,
    PayoutFailedError,
)
from settlement_service.domain.models import (
    FailureReason,
    OrderStatus,
    OutboxEvent,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
    format_amount,
    to_money,
)
from tests.conftest import create_payment_request


class TestMoney:
    """Tests for to_money() and format_amount()."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("49.99", Decimal("49.99")),
            ("10", Decimal("10.00")),
            ("0.005", Decimal("0.01")),
            (7, Decimal("7.00")),
            (Decimal("1.234"), Decimal("1.23")),
        ],
    )
    def test_to_money(self, value: str | int | Decimal, expected: Decimal) -> None:
        """Values are quantized half-up to cents."""
        assert to_money(value) == expected

    @pytest.mark.parametrize("value", ["abc", "", "Infinity", 49.99])
    def test_to_money_rejects(self, value: object) -> None:
        """Garbage, infinities and binary floats are rejected."""
        with pytest.raises(InvalidArgumentError):
            to_money(value)  # type: ignore[arg-type]

    def test_format_amount(self) -> None:
        """Wire amounts always carry two fraction digits."""
        assert format_amount(Decimal("10")) == "10.00"
        assert format_amount(Decimal("39.99")) == "39.99"


class TestPaymentRequest:
    """Tests for PaymentRequest validation."""

    def test_valid_request(self) -> None:
        """The reference request is accepted."""
        request = create_payment_request()

        assert request.amount == Decimal("49.99")

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"amount": Decimal("0")}, "amount"),
            ({"amount": Decimal("-1.00")}, "amount"),
            ({"amount": Decimal("1.001")}, "amount"),
            ({"currency": "US"}, "currency"),
            ({"seller_recipient": ""}, "seller_recipient"),
            ({"product_id": ""}, "product_id"),
        ],
    )
    def test_invalid_request(self, overrides: dict, field: str) -> None:
        """Each invalid field is named in the error."""
        with pytest.raises(InvalidArgumentError) as exc_info:
            create_payment_request(**overrides)

        assert exc_info.value.field == field

    def test_float_amount_rejected(self) -> None:
        """Amounts must be Decimal."""
        with pytest.raises(InvalidArgumentError):
            create_payment_request(amount=49.99)  # type: ignore[arg-type]


class TestOrderStatus:
    """Tests for provider status mapping."""

    @pytest.mark.parametrize(
        ("provider", "expected"),
        [
            ("CREATED", OrderStatus.CREATED),
            ("PAYER_ACTION_REQUIRED", OrderStatus.CREATED),
            ("APPROVED", OrderStatus.APPROVED),
            ("COMPLETED", OrderStatus.CAPTURED),
            ("VOIDED", OrderStatus.FAILED),
            ("", OrderStatus.FAILED),
        ],
    )
    def test_from_provider(self, provider: str, expected: OrderStatus) -> None:
        """Provider statuses collapse onto four local ones."""
        assert OrderStatus.from_provider(provider) is expected


class TestSettlementRecord:
    """Tests for SettlementRecord.create()."""

    def test_empty_ids_stored_as_null(self) -> None:
        """Empty payment and batch ids become None."""
        result = SettlementResult.failed(FailureReason.TIMEOUT, order_id="ORDER-1")

        record = SettlementRecord.create("stl-1", "buyer-1", create_payment_request(), result)

        assert record.status is SettlementStatus.FAILED
        assert record.payment_id is None
        assert record.payout_batch_id is None
        assert record.amount == Decimal("49.99")
        assert record.seller_recipient == "seller@x.com"


class TestOutboxEvent:
    """Tests for OutboxEvent."""

    def test_create_generates_ulid(self) -> None:
        """Each event gets a fresh 26-character id and no publish time."""
        first = OutboxEvent.create("Settlement", "stl-1", "SettlementCompleted", {"settlement_id": "stl-1"})
        second = OutboxEvent.create("Settlement", "stl-1", "SettlementCompleted", {"settlement_id": "stl-1"})

        assert len(first.id) == 26
        assert first.id != second.id
        assert first.published_at is None
        assert first.retry_count == 0


class TestExceptions:
    """Tests for domain and gateway errors."""

    def test_invalid_argument_is_value_error(self) -> None:
        """InvalidArgumentError is both a DomainError and a ValueError."""
        error = InvalidArgumentError("amount", Decimal("0"), "must be positive")

        assert isinstance(error, DomainError)
        assert isinstance(error, ValueError)
        assert "must be positive" in str(error)

    def test_buyer_banned_message(self) -> None:
        """The ban reason is part of the message."""
        assert str(BuyerBannedError("buyer-1", "fraud")) == "Buyer buyer-1 is banned: fraud"
        assert str(BuyerBannedError("buyer-1")) == "Buyer buyer-1 is banned"

    def test_gateway_log_context(self) -> None:
        """Gateway errors expose their operation and provider details for logs."""
        error = PayoutFailedError("payout failed with HTTP 500", status_code=500, debug_id="dbg-1")

        assert error.log_context() == {
            "operation": "payout",
            "provider": "paypal",
            "status_code": 500,
            "debug_id": "dbg-1",
            "issue": None,
        }
        assert CaptureFailedError("x").operation == "capture_order"
