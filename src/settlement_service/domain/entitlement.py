from settlement_service.domain.models import Product, SettlementResult, SettlementStatus


def is_entitled(product: Product, settlement_result: SettlementResult | None) -> bool:
    """Single authority for whether a buyer may download ``product``.

    Paid products need a completed settlement that also carries a capture id;
    either check alone is not enough.
    """
    if product.is_free:
        return True
    if settlement_result is None:
        return False
    return settlement_result.status is SettlementStatus.COMPLETED and bool(settlement_result.payment_id)
