from typing import Any


class DomainError(Exception):
    """Base exception for domain errors."""


class InvalidArgumentError(DomainError, ValueError):
    """Raised when a value violates a domain constraint."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class InvalidTransitionError(DomainError):
    """Raised when the settlement state machine is asked for an illegal transition."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition settlement from {current} to {requested}")


class SettlementInProgressError(DomainError):
    """Raised when a purchase is submitted again while the previous attempt is in flight."""

    def __init__(self, submission_key: str) -> None:
        self.submission_key = submission_key
        super().__init__(f"Settlement already in progress for {submission_key}")


class ProductNotFoundError(DomainError):
    """Raised when a product cannot be found."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class BuyerBannedError(DomainError):
    """Raised when a banned buyer attempts a purchase."""

    def __init__(self, buyer_id: str, reason: str | None = None) -> None:
        self.buyer_id = buyer_id
        self.reason = reason
        super().__init__(f"Buyer {buyer_id} is banned" + (f": {reason}" if reason else ""))


class MissingPayoutRecipientError(DomainError):
    """Raised when a paid product has no seller payout address."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product {product_id} has no payout recipient configured")


class GatewayError(Exception):
    """Base exception for payment provider failures."""

    operation = "gateway"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "paypal",
        status_code: int | None = None,
        debug_id: str | None = None,
        issue: str | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.debug_id = debug_id
        self.issue = issue
        super().__init__(message)

    def log_context(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "provider": self.provider,
            "status_code": self.status_code,
            "debug_id": self.debug_id,
            "issue": self.issue,
        }


class AuthFailedError(GatewayError):
    """Access token could not be obtained."""

    operation = "auth"


class OrderCreateFailedError(GatewayError):
    """Provider rejected or did not answer the order creation."""

    operation = "create_order"


class OrderLookupFailedError(GatewayError):
    """Provider order status could not be read."""

    operation = "get_order"


class CaptureFailedError(GatewayError):
    """Capture was rejected or did not complete. The buyer was not charged."""

    operation = "capture_order"


class PayoutFailedError(GatewayError):
    """Payout to the seller failed after the buyer was charged."""

    operation = "payout"


class DuplicatePayoutBatchError(PayoutFailedError):
    """Provider already has a batch with this sender_batch_id.

    An earlier attempt may have reached the provider, so the seller could
    already be paid. Verify the batch before paying out manually.
    """

    def __init__(self, message: str, *, sender_batch_id: str, **kwargs: Any) -> None:
        self.sender_batch_id = sender_batch_id
        super().__init__(message, **kwargs)

    def log_context(self) -> dict[str, Any]:
        return {**super().log_context(), "sender_batch_id": self.sender_batch_id}
