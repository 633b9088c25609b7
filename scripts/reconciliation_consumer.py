#!/usr/bin/env python3
"""Reconciliation consumer for settlement events.

Listens to settlement topics and raises a reconciliation entry for every
capture whose seller payout failed, plus every dead-lettered event.
"""
import asyncio
import json
import signal
from collections.abc import Callable
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError

from settlement_service.config import settings
from settlement_service.logging import configure_logging


logger = structlog.get_logger()

GROUP_ID = "settlement-reconciliation"
SETTLEMENT_EVENT_TYPES = ("SettlementCompleted", "SettlementFailed", "PayoutFailed")

Event = dict[str, Any]


def topics(prefix: str | None = None) -> list[str]:
    prefix = prefix or settings.kafka_topic_prefix
    return [*(f"{prefix}.{name.lower()}" for name in SETTLEMENT_EVENT_TYPES), f"{prefix}.dlq"]


def _on_completed(event_id: str | None, payload: dict[str, Any]) -> None:
    logger.info(
        "settlement_completed_event",
        event_id=event_id,
        settlement_id=payload.get("settlement_id"),
        payment_id=payload.get("payment_id"),
        payout_batch_id=payload.get("payout_batch_id"),
        seller_payout=payload.get("seller_payout"),
        platform_payout=payload.get("platform_payout"),
        currency=payload.get("currency"),
    )


def _on_failed(event_id: str | None, payload: dict[str, Any]) -> None:
    logger.info(
        "settlement_failed_event",
        event_id=event_id,
        settlement_id=payload.get("settlement_id"),
        reason=payload.get("reason"),
    )


def _on_payout_failed(event_id: str | None, payload: dict[str, Any]) -> None:
    # Buyer was charged but the seller was not paid
    logger.critical(
        "reconciliation_required",
        event_id=event_id,
        settlement_id=payload.get("settlement_id"),
        order_id=payload.get("order_id"),
        payment_id=payload.get("payment_id"),
        seller_recipient=payload.get("seller_recipient"),
        seller_payout=payload.get("seller_payout"),
        currency=payload.get("currency"),
    )


HANDLERS: dict[str, Callable[[str | None, dict[str, Any]], None]] = {
    "SettlementCompleted": _on_completed,
    "SettlementFailed": _on_failed,
    "PayoutFailed": _on_payout_failed,
}


async def process_event(topic: str, event: Event) -> None:
    event_type = event.get("event_type", "unknown")

    if topic.endswith(".dlq"):
        logger.warning(
            "dead_letter_event_received",
            event_id=event.get("event_id"),
            event_type=event_type,
            settlement_id=event.get("aggregate_id"),
            retry_count=event.get("retry_count"),
            error=event.get("error"),
        )
        return

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("unknown_event_received", event_id=event.get("event_id"), event_type=event_type)
        return
    handler(event.get("event_id"), event.get("payload", {}))


def install_shutdown_handlers() -> asyncio.Event:
    shutdown = asyncio.Event()

    def on_signal() -> None:
        logger.info("shutdown_signal_received")
        shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, on_signal)
    return shutdown


async def drain(consumer: AIOKafkaConsumer, shutdown: asyncio.Event) -> None:
    while not shutdown.is_set():
        try:
            batches = await asyncio.wait_for(consumer.getmany(timeout_ms=1000, max_records=100), timeout=2.0)
        except TimeoutError:
            continue
        except KafkaError as e:
            logger.error("kafka_error", error=str(e))
            await asyncio.sleep(1)
            continue

        for partition, messages in batches.items():
            for message in messages:
                await process_event(partition.topic, message.value)


async def consume_events() -> None:
    subscribed = topics()
    consumer = AIOKafkaConsumer(
        *subscribed,
        bootstrap_servers=settings.redpanda_brokers,
        group_id=GROUP_ID,
        auto_offset_reset="earliest",
        enable_auto_commit=True,
        value_deserializer=lambda m: json.loads(m.decode("utf-8")),
    )
    shutdown = install_shutdown_handlers()

    try:
        await consumer.start()
        logger.info("consumer_started", topics=subscribed, group_id=GROUP_ID, brokers=settings.redpanda_brokers)
        await drain(consumer, shutdown)
    finally:
        await consumer.stop()
        logger.info("consumer_stopped")


async def main() -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)
    logger.info("reconciliation_consumer_starting")
    await consume_events()


if __name__ == "__main__":
    asyncio.run(main())
