from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.domain.models import (
    ZERO,
    CommissionReport,
    FailureReason,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
    to_money,
)


SETTLEMENT_COLUMNS = """
    id, product_id, buyer_id, status, amount, currency, seller_recipient,
    reason, order_id, payment_id, payout_batch_id, seller_payout,
    platform_payout, created_at
"""


class SettlementRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, record: SettlementRecord) -> None:
        await self._session.execute(
            text("""
                INSERT INTO settlements
                    (id, product_id, buyer_id, status, amount, currency,
                     seller_recipient, reason, order_id, payment_id,
                     payout_batch_id, seller_payout, platform_payout, created_at)
                VALUES
                    (:id, :product_id, :buyer_id, :status, :amount, :currency,
                     :seller_recipient, :reason, :order_id, :payment_id,
                     :payout_batch_id, :seller_payout, :platform_payout, :created_at)
            """),
            {
                "id": record.id,
                "product_id": record.product_id,
                "buyer_id": record.buyer_id,
                "status": record.status.value,
                "amount": record.amount,
                "currency": record.currency,
                "seller_recipient": record.seller_recipient,
                "reason": record.reason.value if record.reason else None,
                "order_id": record.order_id,
                "payment_id": record.payment_id,
                "payout_batch_id": record.payout_batch_id,
                "seller_payout": record.seller_payout,
                "platform_payout": record.platform_payout,
                "created_at": record.created_at,
            },
        )

    async def get(self, settlement_id: str) -> SettlementRecord | None:
        result = await self._session.execute(
            text(f"SELECT {SETTLEMENT_COLUMNS} FROM settlements WHERE id = :id"),
            {"id": settlement_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return self._to_record(row)

    async def get_latest_result(self, buyer_id: str, product_id: str) -> SettlementResult | None:
        """Most recent completed settlement for this buyer and product, else the most recent attempt."""
        result = await self._session.execute(
            text(f"""
                SELECT {SETTLEMENT_COLUMNS}
                FROM settlements
                WHERE buyer_id = :buyer_id AND product_id = :product_id
                ORDER BY (status = 'COMPLETED') DESC, created_at DESC
                LIMIT 1
            """),
            {"buyer_id": buyer_id, "product_id": product_id},
        )
        row = result.fetchone()
        if not row:
            return None
        record = self._to_record(row)
        return SettlementResult(
            status=record.status,
            payment_id=record.payment_id or "",
            seller_payout=record.seller_payout,
            platform_payout=record.platform_payout,
            payout_batch_id=record.payout_batch_id or "",
            reason=record.reason,
            order_id=record.order_id,
        )

    async def summarize_completed(self, since: datetime) -> CommissionReport:
        result = await self._session.execute(
            text("""
                SELECT COALESCE(SUM(amount), 0) AS total_sales,
                       COALESCE(SUM(platform_payout), 0) AS total_commissions,
                       COUNT(*) AS products_sold,
                       COUNT(DISTINCT buyer_id) AS unique_customers
                FROM settlements
                WHERE status = 'COMPLETED' AND created_at >= :since
            """),
            {"since": since},
        )
        row = result.fetchone()
        if not row:
            return CommissionReport(
                since=since,
                total_sales=ZERO,
                total_commissions=ZERO,
                products_sold=0,
                unique_customers=0,
            )
        return CommissionReport(
            since=since,
            total_sales=to_money(row.total_sales, "total_sales"),
            total_commissions=to_money(row.total_commissions, "total_commissions"),
            products_sold=int(row.products_sold),
            unique_customers=int(row.unique_customers),
        )

    @staticmethod
    def _to_record(row: Any) -> SettlementRecord:
        return SettlementRecord(
            id=row.id,
            product_id=row.product_id,
            buyer_id=row.buyer_id,
            status=SettlementStatus(row.status),
            amount=Decimal(row.amount),
            currency=row.currency,
            seller_recipient=row.seller_recipient,
            reason=FailureReason(row.reason) if row.reason else None,
            order_id=row.order_id,
            payment_id=row.payment_id,
            payout_batch_id=row.payout_batch_id,
            seller_payout=Decimal(row.seller_payout),
            platform_payout=Decimal(row.platform_payout),
            created_at=row.created_at,
        )
