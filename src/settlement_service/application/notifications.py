from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Protocol, assert_never

import structlog

from settlement_service.domain.models import FailureReason, SettlementResult, SettlementStatus
from settlement_service.infrastructure.metrics import PAYOUT_FAILURES_TOTAL


logger = structlog.get_logger()

Severity = Literal["success", "error", "info"]


@dataclass(frozen=True)
class BuyerNotice:
    title: str
    description: str
    severity: Severity


def buyer_notice(result: SettlementResult, product_title: str | None = None) -> BuyerNotice | None:
    """Message shown to the buyer for a finished settlement.

    Provider payloads never reach this text. A cancelled attempt is silent.
    """
    if result.status is SettlementStatus.COMPLETED:
        subject = f'"{product_title}"' if product_title else "your product"
        return BuyerNotice(
            title="Payment complete",
            description=f"The purchase of {subject} is complete and ready to download.",
            severity="success",
        )

    reason = result.reason
    match reason:
        case FailureReason.AUTH_FAILED | FailureReason.ORDER_CREATE_FAILED:
            return BuyerNotice(
                title="Error",
                description="The payment could not be started. Please try again later.",
                severity="error",
            )
        case FailureReason.CAPTURE_FAILED:
            return BuyerNotice(
                title="Payment not completed",
                description="The payment could not be verified. You were not charged and can try again.",
                severity="error",
            )
        case FailureReason.TIMEOUT:
            return BuyerNotice(
                title="Payment expired",
                description="The payment window timed out. You were not charged and can try again.",
                severity="error",
            )
        case FailureReason.PAYOUT_FAILED:
            return BuyerNotice(
                title="Payment received",
                description="Your payment was received and is being processed.",
                severity="info",
            )
        case FailureReason.CANCELLED:
            return None
        case None:
            raise ValueError("Failed settlement result has no reason")
        case _:
            assert_never(reason)


class OperatorAlerter(Protocol):
    async def payout_failed(
        self,
        *,
        settlement_id: str,
        order_id: str,
        payment_id: str,
        seller_recipient: str,
        seller_share: Decimal,
        currency: str,
        error: str,
        possibly_paid: bool = False,
    ) -> None: ...


class LoggingOperatorAlerter:
    """Raises payout failures as critical log events for manual reconciliation.

    ``possibly_paid`` marks a payout the provider may already hold; the
    operator checks the batch before paying the seller by hand.
    """

    async def payout_failed(
        self,
        *,
        settlement_id: str,
        order_id: str,
        payment_id: str,
        seller_recipient: str,
        seller_share: Decimal,
        currency: str,
        error: str,
        possibly_paid: bool = False,
    ) -> None:
        PAYOUT_FAILURES_TOTAL.inc()
        logger.critical(
            "seller_payout_failed",
            settlement_id=settlement_id,
            order_id=order_id,
            payment_id=payment_id,
            seller_recipient=seller_recipient,
            seller_share=str(seller_share),
            currency=currency,
            error=error,
            payout_status="possibly_paid_verify" if possibly_paid else "not_paid",
            action_required="verify_payout_batch" if possibly_paid else "manual_payout",
        )
