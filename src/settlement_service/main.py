import asyncio
import contextlib
import signal
from typing import NoReturn

import structlog

from settlement_service.api.http_app import create_app
from settlement_service.api.server import ApiServer
from settlement_service.api.tracker import SettlementTracker
from settlement_service.application.approval import RedirectApprovalRegistry
from settlement_service.application.guards import InMemorySubmissionGuard, SubmissionGuard
from settlement_service.application.notifications import LoggingOperatorAlerter
from settlement_service.application.orchestrator import SettlementOrchestrator
from settlement_service.application.services import PurchaseService
from settlement_service.application.unit_of_work import unit_of_work_factory
from settlement_service.config import settings
from settlement_service.infrastructure.database import Database
from settlement_service.infrastructure.paypal_client import PayPalGatewayClient
from settlement_service.infrastructure.redis_client import RedisClient
from settlement_service.infrastructure.submission_guard import RedisSubmissionGuard
from settlement_service.logging import configure_logging


logger = structlog.get_logger()


async def main() -> NoReturn:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_settlement_service",
        http_port=settings.http_port,
        paypal_mode=settings.paypal_mode,
        commission_rate=str(settings.commission_rate),
        currency=settings.settlement_currency,
        submission_guard=settings.submission_guard_backend,
        log_level=settings.log_level,
    )

    database = Database(settings.database_url)

    redis_client: RedisClient | None = None
    guard: SubmissionGuard
    if settings.submission_guard_backend == "redis":
        redis_client = RedisClient(settings.redis_url)
        await redis_client.connect()
        guard = RedisSubmissionGuard(redis_client.client, ttl_seconds=settings.submission_lock_ttl_seconds)
    else:
        guard = InMemorySubmissionGuard()

    gateway = PayPalGatewayClient()
    windows = RedirectApprovalRegistry()
    orchestrator = SettlementOrchestrator(
        gateway,
        windows,
        commission_rate=settings.commission_rate,
        poll_interval=settings.approval_poll_interval_seconds,
        approval_timeout=settings.approval_timeout_seconds,
        alerter=LoggingOperatorAlerter(),
        guard=guard,
    )
    service = PurchaseService(unit_of_work_factory(database), orchestrator, settings.settlement_currency)
    tracker = SettlementTracker(
        service,
        windows,
        drain_timeout=settings.shutdown_drain_seconds,
        retention=settings.settlement_retention_seconds,
    )

    health_checks = {"database": database.health_check}
    if redis_client:
        health_checks["redis"] = redis_client.health_check

    app = create_app(
        service,
        windows,
        tracker=tracker,
        health_checks=health_checks,
        approval_url_wait_seconds=settings.paypal_timeout_seconds,
    )
    server = ApiServer(app, host=settings.http_host, port=settings.http_port)

    loop = asyncio.get_running_loop()

    async def shutdown() -> None:
        logger.info("shutting_down")
        await server.stop()
        await tracker.shutdown()
        await gateway.aclose()
        if redis_client:
            await redis_client.close()
        await database.close()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(shutdown()),
        )

    await server.start()
    with contextlib.suppress(asyncio.CancelledError):
        await server.wait_for_termination()

    raise SystemExit(0)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
