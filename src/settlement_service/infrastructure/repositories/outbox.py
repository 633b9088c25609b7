import json
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.domain.models import OutboxEvent


OUTBOX_COLUMNS = """
    id, aggregate_type, aggregate_id, event_type, payload,
    created_at, published_at, retry_count
"""


class OutboxRepository:
    """Settlement events written in the same transaction as the settlement row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, event: OutboxEvent) -> OutboxEvent:
        await self._session.execute(
            text("""
                INSERT INTO outbox
                    (id, aggregate_type, aggregate_id, event_type, payload, created_at, retry_count)
                VALUES
                    (:id, :aggregate_type, :aggregate_id, :event_type, CAST(:payload AS JSONB),
                     :created_at, :retry_count)
            """),
            {
                "id": event.id,
                "aggregate_type": event.aggregate_type,
                "aggregate_id": event.aggregate_id,
                "event_type": event.event_type,
                "payload": json.dumps(event.payload),
                "created_at": event.created_at,
                "retry_count": event.retry_count,
            },
        )
        return event

    async def get_unpublished(self, limit: int = 100) -> list[OutboxEvent]:
        """Oldest unpublished events, locked so parallel relays skip them."""
        result = await self._session.execute(
            text(f"""
                SELECT {OUTBOX_COLUMNS}
                FROM outbox
                WHERE published_at IS NULL
                ORDER BY created_at
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            """),
            {"limit": limit},
        )
        return [self._to_event(row) for row in result.fetchall()]

    async def count_pending(self) -> int:
        result = await self._session.execute(text("SELECT COUNT(*) FROM outbox WHERE published_at IS NULL"))
        return int(result.scalar_one())

    async def mark_published(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self._session.execute(
            text("UPDATE outbox SET published_at = NOW() WHERE id = ANY(:ids)"),
            {"ids": event_ids},
        )

    async def increment_retry_count(self, event_id: str) -> None:
        await self._session.execute(
            text("UPDATE outbox SET retry_count = retry_count + 1 WHERE id = :id"),
            {"id": event_id},
        )

    @staticmethod
    def _to_event(row: Any) -> OutboxEvent:
        # asyncpg hands JSONB back as text unless a codec is registered
        payload = row.payload if isinstance(row.payload, dict) else json.loads(row.payload)
        return OutboxEvent(
            id=row.id,
            aggregate_type=row.aggregate_type,
            aggregate_id=row.aggregate_id,
            event_type=row.event_type,
            payload=payload,
            created_at=row.created_at,
            published_at=row.published_at,
            retry_count=row.retry_count,
        )
