#!/usr/bin/env python3
"""Outbox processor entrypoint script.

Runs the OutboxProcessor as a standalone worker that relays settlement
events from the outbox table to Kafka/Redpanda. Relay metrics are served
on ``outbox_metrics_port`` since this process has no HTTP API.
"""
import asyncio
import contextlib
import signal

import structlog
from prometheus_client import start_http_server

from settlement_service.config import settings
from settlement_service.infrastructure.database import Database
from settlement_service.infrastructure.event_publisher import OutboxProcessor
from settlement_service.logging import configure_logging


logger = structlog.get_logger()


async def run(processor: OutboxProcessor) -> None:
    """Relay until a signal arrives or the processor gives up on its own."""
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    relay = asyncio.create_task(processor.start())
    waiter = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({relay, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if stop_requested.is_set():
            logger.info("shutdown_signal_received")
    finally:
        await processor.stop()
        for task in (relay, waiter):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def main() -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)
    logger.info(
        "outbox_processor_starting",
        database=settings.database_url.split("@")[-1],
        redpanda_brokers=settings.redpanda_brokers,
        topic_prefix=settings.kafka_topic_prefix,
        batch_size=settings.outbox_batch_size,
        metrics_port=settings.outbox_metrics_port,
    )
    start_http_server(settings.outbox_metrics_port)

    database = Database(settings.database_url)
    try:
        await run(OutboxProcessor(database=database))
    finally:
        await database.close()
        logger.info("outbox_processor_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
