"""HTTP surface for purchases, approval redirects and commission reports."""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from settlement_service.api.tracker import SettlementTracker, TrackedSettlement
from settlement_service.application.approval import RedirectApprovalRegistry
from settlement_service.application.notifications import BuyerNotice
from settlement_service.application.services import PurchaseCommand, PurchaseService
from settlement_service.domain.exceptions import (
    BuyerBannedError,
    DomainError,
    InvalidArgumentError,
    MissingPayoutRecipientError,
    ProductNotFoundError,
    SettlementInProgressError,
)
from settlement_service.domain.models import SettlementRecord, SettlementResult, format_amount


logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]

ERROR_STATUS: dict[type[DomainError], tuple[int, str]] = {
    ProductNotFoundError: (404, "PRODUCT_NOT_FOUND"),
    BuyerBannedError: (403, "BUYER_BANNED"),
    SettlementInProgressError: (409, "SETTLEMENT_IN_PROGRESS"),
    MissingPayoutRecipientError: (422, "MISSING_PAYOUT_RECIPIENT"),
    InvalidArgumentError: (422, "INVALID_ARGUMENT"),
}

WINDOW_CLOSED_PAGE = """<!doctype html>
<html><body><p>{message}</p><script>window.close();</script></body></html>
"""


class PurchaseBody(BaseModel):
    product_id: str = Field(min_length=1)
    buyer_id: str = Field(min_length=1)


def _money(amount: Decimal) -> str:
    return format_amount(amount)


def result_payload(result: SettlementResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "status": result.status.value,
        "reason": result.reason.value if result.reason else None,
        "order_id": result.order_id,
        "payment_id": result.payment_id or None,
        "payout_batch_id": result.payout_batch_id or None,
        "seller_payout": _money(result.seller_payout),
        "platform_payout": _money(result.platform_payout),
    }


def notice_payload(notice: BuyerNotice | None) -> dict[str, str] | None:
    if notice is None:
        return None
    return {"title": notice.title, "description": notice.description, "severity": notice.severity}


def tracked_payload(entry: TrackedSettlement) -> dict[str, Any]:
    snapshot = entry.snapshot
    outcome = entry.outcome
    return {
        "settlement_id": entry.settlement_id,
        "product_id": entry.prepared.command.product_id,
        "state": snapshot.state.value,
        "reason": snapshot.reason.value if snapshot.reason else None,
        "order_id": snapshot.order_id,
        "approval_url": snapshot.approval_url if not snapshot.state.is_terminal else None,
        "result": result_payload(snapshot.result),
        "entitled": outcome.entitled if outcome else False,
        "notice": notice_payload(outcome.notice) if outcome else None,
        "error": entry.error,
    }


def record_payload(record: SettlementRecord) -> dict[str, Any]:
    return {
        "settlement_id": record.id,
        "product_id": record.product_id,
        "state": record.status.value,
        "reason": record.reason.value if record.reason else None,
        "order_id": record.order_id,
        "approval_url": None,
        "result": {
            "status": record.status.value,
            "reason": record.reason.value if record.reason else None,
            "order_id": record.order_id,
            "payment_id": record.payment_id,
            "payout_batch_id": record.payout_batch_id,
            "seller_payout": _money(record.seller_payout),
            "platform_payout": _money(record.platform_payout),
        },
        "notice": None,
        "error": None,
    }


def create_app(
    service: PurchaseService,
    windows: RedirectApprovalRegistry,
    tracker: SettlementTracker | None = None,
    health_checks: dict[str, HealthCheck] | None = None,
    approval_url_wait_seconds: float = 10.0,
) -> FastAPI:
    """Create the settlement HTTP application."""
    tracker = tracker or SettlementTracker(service, windows)
    checks = health_checks or {}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await tracker.shutdown()

    app = FastAPI(title="Settlement Service", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.tracker = tracker

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        status_code, code = next(
            (value for error_type, value in ERROR_STATUS.items() if isinstance(exc, error_type)),
            (400, "DOMAIN_ERROR"),
        )
        logger.info("request_rejected", path=request.url.path, code=code, status_code=status_code)
        return JSONResponse(status_code=status_code, content={"error": code, "message": str(exc)})

    @app.post("/purchases")
    async def create_purchase(body: PurchaseBody) -> JSONResponse:
        cmd = PurchaseCommand(product_id=body.product_id, buyer_id=body.buyer_id)
        if tracker.in_flight(cmd.submission_key):
            raise SettlementInProgressError(cmd.submission_key)

        prepared = await service.prepare(cmd)
        if prepared.is_free:
            outcome = await service.settle(prepared)
            return JSONResponse(
                status_code=200,
                content={"settlement_id": None, "product_id": cmd.product_id, "entitled": outcome.entitled},
            )

        entry = tracker.start(prepared)
        await entry.wait_for_progress(approval_url_wait_seconds)
        return JSONResponse(status_code=202, content=tracked_payload(entry))

    @app.get("/settlements/{settlement_id}")
    async def get_settlement(settlement_id: str) -> JSONResponse:
        entry = tracker.get(settlement_id)
        if entry is not None:
            return JSONResponse(content=tracked_payload(entry))

        record = await service.get_record(settlement_id)
        if record is None:
            return JSONResponse(status_code=404, content={"error": "SETTLEMENT_NOT_FOUND"})
        return JSONResponse(content=record_payload(record))

    @app.post("/settlements/{settlement_id}/approval-window/close")
    async def close_approval_window(settlement_id: str) -> JSONResponse:
        entry = tracker.get(settlement_id)
        order_id = entry.snapshot.order_id if entry else None
        if order_id is None or not windows.mark_closed(order_id):
            return JSONResponse(status_code=404, content={"error": "APPROVAL_WINDOW_NOT_FOUND"})
        return JSONResponse(status_code=202, content={"settlement_id": settlement_id, "window": "closed"})

    @app.get("/payments/return", response_class=HTMLResponse)
    async def payment_return(token: str = Query(min_length=1)) -> HTMLResponse:
        found = windows.mark_returned(token)
        message = "Thanks, you can close this window now." if found else "This payment is no longer active."
        return HTMLResponse(WINDOW_CLOSED_PAGE.format(message=message), status_code=200 if found else 404)

    @app.get("/payments/cancel", response_class=HTMLResponse)
    async def payment_cancel(token: str = Query(min_length=1)) -> HTMLResponse:
        found = windows.mark_cancelled(token)
        message = "Payment cancelled. You can close this window." if found else "This payment is no longer active."
        return HTMLResponse(WINDOW_CLOSED_PAGE.format(message=message), status_code=200 if found else 404)

    @app.get("/products/{product_id}/entitlement")
    async def get_entitlement(product_id: str, buyer_id: str = Query(min_length=1)) -> dict[str, Any]:
        entitled = await service.check_entitlement(PurchaseCommand(product_id=product_id, buyer_id=buyer_id))
        return {"product_id": product_id, "buyer_id": buyer_id, "entitled": entitled}

    @app.get("/reports/commissions")
    async def commission_report(days: int = Query(default=7, ge=1, le=366)) -> dict[str, Any]:
        report = await service.commission_report(days)
        return {
            "since": report.since.isoformat(),
            "days": days,
            "total_sales": _money(report.total_sales),
            "total_commissions": _money(report.total_commissions),
            "products_sold": report.products_sold,
            "unique_customers": report.unique_customers,
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health() -> JSONResponse:
        results = {name: await check() for name, check in checks.items()}
        healthy = all(results.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "degraded", "checks": results},
        )

    return app
