from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ulid import ULID

from settlement_service.domain.exceptions import InvalidArgumentError


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | str | int, field_name: str = "amount") -> Decimal:
    """Parse a provider or datastore value into a two-place Decimal."""
    if isinstance(value, float):
        raise InvalidArgumentError(field_name, value, "binary floats are not accepted for money")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidArgumentError(field_name, value, "not a decimal amount") from exc
    if not amount.is_finite():
        raise InvalidArgumentError(field_name, value, "amount must be finite")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    """Wire format: exactly two fraction digits."""
    return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))


class OrderStatus(Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"

    @classmethod
    def from_provider(cls, provider_status: str) -> "OrderStatus":
        match provider_status:
            case "CREATED" | "SAVED" | "PAYER_ACTION_REQUIRED":
                return cls.CREATED
            case "APPROVED":
                return cls.APPROVED
            case "COMPLETED":
                return cls.CAPTURED
            case _:
                return cls.FAILED


class SettlementStatus(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureReason(Enum):
    AUTH_FAILED = "AUTH_FAILED"
    ORDER_CREATE_FAILED = "ORDER_CREATE_FAILED"
    CAPTURE_FAILED = "CAPTURE_FAILED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal
    currency: str
    seller_recipient: str
    product_name: str
    product_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            raise InvalidArgumentError("amount", self.amount, "must be a Decimal")
        if self.amount <= 0:
            raise InvalidArgumentError("amount", self.amount, "must be positive")
        if self.amount != self.amount.quantize(CENT):
            raise InvalidArgumentError("amount", self.amount, "must have at most two fraction digits")
        if len(self.currency) != 3:
            raise InvalidArgumentError("currency", self.currency, "must be ISO 4217 code (3 characters)")
        if not self.seller_recipient:
            raise InvalidArgumentError("seller_recipient", self.seller_recipient, "is required")
        if not self.product_id:
            raise InvalidArgumentError("product_id", self.product_id, "is required")


@dataclass(frozen=True)
class Order:
    order_id: str
    approval_url: str
    status: OrderStatus


@dataclass(frozen=True)
class CaptureResult:
    order_id: str
    capture_id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class PayoutResult:
    payout_batch_id: str
    sender_batch_id: str
    batch_status: str | None = None


@dataclass(frozen=True)
class SettlementResult:
    status: SettlementStatus
    payment_id: str = ""
    seller_payout: Decimal = ZERO
    platform_payout: Decimal = ZERO
    payout_batch_id: str = ""
    reason: FailureReason | None = None
    order_id: str | None = None

    @classmethod
    def completed(
        cls,
        payment_id: str,
        payout_batch_id: str,
        seller_payout: Decimal,
        platform_payout: Decimal,
        order_id: str,
    ) -> "SettlementResult":
        return cls(
            status=SettlementStatus.COMPLETED,
            payment_id=payment_id,
            seller_payout=seller_payout,
            platform_payout=platform_payout,
            payout_batch_id=payout_batch_id,
            order_id=order_id,
        )

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        order_id: str | None = None,
        payment_id: str = "",
        seller_payout: Decimal = ZERO,
        platform_payout: Decimal = ZERO,
    ) -> "SettlementResult":
        return cls(
            status=SettlementStatus.FAILED,
            payment_id=payment_id,
            seller_payout=seller_payout,
            platform_payout=platform_payout,
            reason=reason,
            order_id=order_id,
        )


@dataclass(frozen=True)
class Product:
    id: str
    title: str
    price: Decimal
    is_free: bool
    seller_id: str
    paypal_email: str | None = None
    sales: int = 0


@dataclass
class SettlementRecord:
    id: str
    product_id: str
    buyer_id: str
    status: SettlementStatus
    amount: Decimal
    currency: str
    seller_recipient: str
    reason: FailureReason | None = None
    order_id: str | None = None
    payment_id: str | None = None
    payout_batch_id: str | None = None
    seller_payout: Decimal = ZERO
    platform_payout: Decimal = ZERO
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        settlement_id: str,
        buyer_id: str,
        request: PaymentRequest,
        result: SettlementResult,
    ) -> "SettlementRecord":
        return cls(
            id=settlement_id,
            product_id=request.product_id,
            buyer_id=buyer_id,
            status=result.status,
            amount=request.amount,
            currency=request.currency,
            seller_recipient=request.seller_recipient,
            reason=result.reason,
            order_id=result.order_id,
            payment_id=result.payment_id or None,
            payout_batch_id=result.payout_batch_id or None,
            seller_payout=result.seller_payout,
            platform_payout=result.platform_payout,
        )


@dataclass(frozen=True)
class CommissionReport:
    since: datetime
    total_sales: Decimal
    total_commissions: Decimal
    products_sold: int
    unique_customers: int


@dataclass
class OutboxEvent:
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    published_at: datetime | None = None
    retry_count: int = 0

    @classmethod
    def create(
        cls,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> "OutboxEvent":
        return cls(
            id=str(ULID()),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
        )


def new_settlement_id() -> str:
    return str(ULID())
