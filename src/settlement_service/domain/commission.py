"""Platform/seller commission split."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from settlement_service.domain.exceptions import InvalidArgumentError
from settlement_service.domain.models import CENT


@dataclass(frozen=True)
class CommissionSplit:
    platform_share: Decimal
    seller_share: Decimal

    @property
    def total(self) -> Decimal:
        return self.platform_share + self.seller_share


def split(total: Decimal, rate: Decimal) -> CommissionSplit:
    """
    Split ``total`` into platform and seller shares.

    The platform share is rounded half-up to cents; the seller share is the
    exact remainder, so the two always add back up to ``total``.
    """
    if not isinstance(total, Decimal) or not isinstance(rate, Decimal):
        raise InvalidArgumentError("total/rate", (total, rate), "must be Decimal values")
    if not total.is_finite() or total <= 0:
        raise InvalidArgumentError("total", total, "must be positive")
    if total != total.quantize(CENT):
        raise InvalidArgumentError("total", total, "must be expressed in whole cents")
    if not rate.is_finite() or not Decimal("0") <= rate <= Decimal("1"):
        raise InvalidArgumentError("rate", rate, "must be between 0 and 1")

    platform_share = (total * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    seller_share = total - platform_share
    return CommissionSplit(platform_share=platform_share, seller_share=seller_share)
