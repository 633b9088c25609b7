import asyncio
import json
import random
from datetime import UTC, datetime
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from settlement_service.config import settings
from settlement_service.domain.models import OutboxEvent
from settlement_service.infrastructure.database import Database
from settlement_service.infrastructure.metrics import (
    OUTBOX_EVENTS_FAILED,
    OUTBOX_EVENTS_PUBLISHED,
    OUTBOX_PENDING_EVENTS,
)
from settlement_service.infrastructure.repositories.outbox import OutboxRepository


logger = structlog.get_logger()


def topic_for(prefix: str, event_type: str) -> str:
    return f"{prefix}.{event_type.lower()}"


def event_envelope(event: OutboxEvent) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": event.aggregate_id,
        "event_type": event.event_type,
        "payload": event.payload,
        "timestamp": event.created_at.isoformat(),
    }


def dead_letter_envelope(event: OutboxEvent, reason: str) -> dict[str, Any]:
    return {
        **event_envelope(event),
        "retry_count": event.retry_count,
        "failed_at": datetime.now(UTC).isoformat(),
        "error": reason,
    }


class OutboxProcessor:
    """Relays committed settlement events to `<prefix>.<event_type>` topics.

    Failed publishes are retried on later batches until ``max_retries``,
    after which the event is dead-lettered. The processor stops itself after
    ``MAX_CONSECUTIVE_FAILURES`` failed batches in a row.
    """

    MAX_CONSECUTIVE_FAILURES = 10

    def __init__(
        self,
        database: Database,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        topic_prefix: str | None = None,
    ) -> None:
        self._database = database
        self._batch_size = batch_size or settings.outbox_batch_size
        self._poll_interval = poll_interval or settings.outbox_poll_interval_seconds
        self._max_retries = max_retries or settings.outbox_max_retries
        self._base_delay = base_delay or settings.outbox_base_delay_seconds
        self._max_delay = max_delay or settings.outbox_max_delay_seconds
        self._topic_prefix = topic_prefix or settings.kafka_topic_prefix
        self._producer: AIOKafkaProducer | None = None
        self._running = False
        self._consecutive_failures = 0

    @property
    def dlq_topic(self) -> str:
        return f"{self._topic_prefix}.dlq"

    def _build_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=settings.redpanda_brokers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )

    async def start(self) -> None:
        """Start the producer and relay events until stopped or the circuit breaker trips."""
        self._producer = self._build_producer()
        await self._producer.start()
        self._running = True
        self._consecutive_failures = 0
        logger.info("outbox_processor_started", batch_size=self._batch_size, topic_prefix=self._topic_prefix)

        try:
            while self._running:
                try:
                    relayed = await self._process_batch()
                except Exception as e:
                    if self._trip_breaker(e):
                        break
                    await asyncio.sleep(self._poll_interval)
                    continue

                self._consecutive_failures = 0
                if not relayed:
                    await asyncio.sleep(self._poll_interval)
        finally:
            await self.stop()

    def _trip_breaker(self, error: Exception) -> bool:
        """Count a failed batch; True once the processor should give up."""
        self._consecutive_failures += 1
        logger.error(
            "outbox_processing_error",
            error=str(error),
            consecutive_failures=self._consecutive_failures,
            exc_info=True,
        )
        if self._consecutive_failures < self.MAX_CONSECUTIVE_FAILURES:
            return False
        logger.critical(
            "circuit_breaker_triggered",
            consecutive_failures=self._consecutive_failures,
            action="stopping_processor",
        )
        return True

    async def stop(self) -> None:
        self._running = False
        producer, self._producer = self._producer, None
        if producer is not None:
            await producer.stop()
        logger.info("outbox_processor_stopped")

    async def _process_batch(self) -> int:
        """Relay one batch of unpublished events.

        Events past ``max_retries`` are dead-lettered instead of published.
        The pending gauge is refreshed inside the same transaction.

        Returns:
            Number of events picked up in this batch.
        """
        async with self._database.session() as session:
            outbox_repo = OutboxRepository(session)
            events = await outbox_repo.get_unpublished(self._batch_size)

            if not events:
                OUTBOX_PENDING_EVENTS.set(0)
                return 0

            exhausted = [e for e in events if e.retry_count >= self._max_retries]
            published_ids: list[str] = []
            for event in events:
                if event.retry_count >= self._max_retries:
                    continue
                if await self._publish_event(event):
                    published_ids.append(event.id)
                else:
                    await self._handle_retry(event, outbox_repo)

            if published_ids:
                await outbox_repo.mark_published(published_ids)
                logger.info("batch_published", count=len(published_ids), dead_lettered=len(exhausted))

            if exhausted:
                await self._send_to_dlq(exhausted, outbox_repo)

            OUTBOX_PENDING_EVENTS.set(await outbox_repo.count_pending())
            await session.commit()

            return len(events)

    async def _publish_event(self, event: OutboxEvent) -> bool:
        if not self._producer:
            return False

        topic = topic_for(self._topic_prefix, event.event_type)

        try:
            await self._producer.send_and_wait(
                topic=topic,
                key=event.aggregate_id,
                value=event_envelope(event),
            )
        except KafkaError as e:
            OUTBOX_EVENTS_FAILED.labels(event_type=event.event_type).inc()
            logger.error(
                "event_publish_failed",
                event_id=event.id,
                topic=topic,
                error=str(e),
                retry_count=event.retry_count,
            )
            return False

        OUTBOX_EVENTS_PUBLISHED.labels(event_type=event.event_type).inc()
        logger.info(
            "event_published",
            event_id=event.id,
            topic=topic,
            settlement_id=event.aggregate_id,
            event_type=event.event_type,
        )
        return True

    async def _handle_retry(self, event: OutboxEvent, outbox_repo: OutboxRepository) -> None:
        await outbox_repo.increment_retry_count(event.id)
        logger.warning(
            "event_retry_scheduled",
            event_id=event.id,
            retry_count=event.retry_count + 1,
            next_delay_seconds=self._calculate_backoff_delay(event.retry_count),
        )

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff capped at ``max_delay``, plus up to 10% jitter."""
        delay = min(self._base_delay * 2**retry_count, self._max_delay)
        return delay + random.uniform(0, delay / 10)

    async def _send_to_dlq(self, events: list[OutboxEvent], outbox_repo: OutboxRepository) -> None:
        """Park exhausted events on the DLQ; only delivered ones leave the outbox."""
        if not self._producer:
            return

        for event in events:
            try:
                await self._producer.send_and_wait(
                    topic=self.dlq_topic,
                    key=event.aggregate_id,
                    value=dead_letter_envelope(event, reason="max_retries_exceeded"),
                )
            except KafkaError as e:
                logger.error("dlq_publish_failed", event_id=event.id, error=str(e))
                continue

            await outbox_repo.mark_published([event.id])
            logger.warning(
                "event_sent_to_dlq",
                event_id=event.id,
                settlement_id=event.aggregate_id,
                event_type=event.event_type,
                retry_count=event.retry_count,
            )
