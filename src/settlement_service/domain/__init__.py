"""Domain layer - settlement entities, commission policy and entitlement rules."""

from settlement_service.domain.commission import CommissionSplit, split
from settlement_service.domain.entitlement import is_entitled
from settlement_service.domain.exceptions import (
    AuthFailedError,
    BuyerBannedError,
    CaptureFailedError,
    DuplicatePayoutBatchError,
    DomainError,
    GatewayError,
    InvalidArgumentError,
    InvalidTransitionError,
    MissingPayoutRecipientError,
    OrderCreateFailedError,
    OrderLookupFailedError,
    PayoutFailedError,
    ProductNotFoundError,
    SettlementInProgressError,
)
from settlement_service.domain.models import (
    CaptureResult,
    CommissionReport,
    FailureReason,
    Order,
    OrderStatus,
    OutboxEvent,
    PaymentRequest,
    PayoutResult,
    Product,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
)
from settlement_service.domain.state_machine import (
    SettlementSnapshot,
    SettlementState,
    SettlementStateMachine,
)


__all__ = [
    "AuthFailedError",
    "BuyerBannedError",
    "CaptureFailedError",
    "CaptureResult",
    "CommissionReport",
    "CommissionSplit",
    "DomainError",
    "DuplicatePayoutBatchError",
    "FailureReason",
    "GatewayError",
    "InvalidArgumentError",
    "InvalidTransitionError",
    "MissingPayoutRecipientError",
    "Order",
    "OrderCreateFailedError",
    "OrderLookupFailedError",
    "OrderStatus",
    "OutboxEvent",
    "PaymentRequest",
    "PayoutFailedError",
    "PayoutResult",
    "Product",
    "ProductNotFoundError",
    "SettlementInProgressError",
    "SettlementRecord",
    "SettlementResult",
    "SettlementSnapshot",
    "SettlementState",
    "SettlementStateMachine",
    "SettlementStatus",
    "is_entitled",
    "split",
]
