from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.domain.models import Product, to_money


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, product_id: str) -> Product | None:
        result = await self._session.execute(
            text("""
                SELECT id, title, price, is_free, user_id, paypal_email, sales
                FROM products
                WHERE id = :id
            """),
            {"id": product_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return Product(
            id=str(row.id),
            title=row.title,
            price=to_money(str(row.price) if row.price is not None else "0", "price"),
            is_free=bool(row.is_free),
            seller_id=str(row.user_id),
            paypal_email=row.paypal_email or None,
            sales=row.sales or 0,
        )

    async def increment_sales(self, product_id: str) -> None:
        await self._session.execute(
            text("""
                UPDATE products
                SET sales = COALESCE(sales, 0) + 1
                WHERE id = :id
            """),
            {"id": product_id},
        )
