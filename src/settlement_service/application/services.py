import asyncio
import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from settlement_service.application.notifications import BuyerNotice, buyer_notice
from settlement_service.application.orchestrator import SettlementOrchestrator
from settlement_service.application.unit_of_work import UnitOfWorkFactory
from settlement_service.config import settings
from settlement_service.domain.entitlement import is_entitled
from settlement_service.domain.exceptions import (
    BuyerBannedError,
    InvalidArgumentError,
    MissingPayoutRecipientError,
    ProductNotFoundError,
)
from settlement_service.domain.models import (
    CommissionReport,
    FailureReason,
    OutboxEvent,
    PaymentRequest,
    Product,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
    format_amount,
)
from settlement_service.domain.state_machine import SettlementStateMachine


logger = structlog.get_logger()


@dataclass
class PurchaseCommand:
    product_id: str
    buyer_id: str

    @property
    def submission_key(self) -> str:
        return f"{self.buyer_id}:{self.product_id}"


@dataclass
class PreparedPurchase:
    command: PurchaseCommand
    product: Product
    request: PaymentRequest | None

    @property
    def is_free(self) -> bool:
        return self.request is None


@dataclass
class PurchaseOutcome:
    settlement_id: str | None
    result: SettlementResult | None
    entitled: bool
    notice: BuyerNotice | None = None


class SettlementPersistError(Exception):
    """A finished settlement could not be written; ``outcome`` still holds what happened."""

    def __init__(self, outcome: PurchaseOutcome) -> None:
        self.outcome = outcome
        super().__init__(f"Settlement {outcome.settlement_id} could not be persisted")


def settlement_events(record: SettlementRecord) -> list[OutboxEvent]:
    """Outbox events for a finished settlement attempt."""
    base: dict[str, Any] = {
        "settlement_id": record.id,
        "product_id": record.product_id,
        "buyer_id": record.buyer_id,
        "order_id": record.order_id,
        "amount": format_amount(record.amount),
        "currency": record.currency,
    }

    if record.status is SettlementStatus.COMPLETED:
        return [
            OutboxEvent.create(
                aggregate_type="Settlement",
                aggregate_id=record.id,
                event_type="SettlementCompleted",
                payload={
                    **base,
                    "payment_id": record.payment_id,
                    "payout_batch_id": record.payout_batch_id,
                    "seller_recipient": record.seller_recipient,
                    "seller_payout": format_amount(record.seller_payout),
                    "platform_payout": format_amount(record.platform_payout),
                },
            )
        ]

    reason = record.reason.value if record.reason else None
    events = [
        OutboxEvent.create(
            aggregate_type="Settlement",
            aggregate_id=record.id,
            event_type="SettlementFailed",
            payload={**base, "reason": reason},
        )
    ]
    if record.reason is FailureReason.PAYOUT_FAILED:
        events.append(
            OutboxEvent.create(
                aggregate_type="Settlement",
                aggregate_id=record.id,
                event_type="PayoutFailed",
                payload={
                    **base,
                    "payment_id": record.payment_id,
                    "seller_recipient": record.seller_recipient,
                    "seller_payout": format_amount(record.seller_payout),
                    "platform_payout": format_amount(record.platform_payout),
                },
            )
        )
    return events


class PurchaseService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        orchestrator: SettlementOrchestrator,
        currency: str | None = None,
        *,
        persist_attempts: int | None = None,
        persist_retry_delay: float | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._orchestrator = orchestrator
        self._currency = currency or settings.settlement_currency
        self._persist_attempts = persist_attempts or settings.persist_max_attempts
        self._persist_retry_delay = (
            persist_retry_delay if persist_retry_delay is not None else settings.persist_retry_delay_seconds
        )

    async def purchase(self, cmd: PurchaseCommand, machine: SettlementStateMachine | None = None) -> PurchaseOutcome:
        prepared = await self.prepare(cmd)
        return await self.settle(prepared, machine)

    async def prepare(self, cmd: PurchaseCommand) -> PreparedPurchase:
        """Validate a purchase before any provider call.

        Raises ProductNotFoundError, BuyerBannedError or MissingPayoutRecipientError.
        """
        log = logger.bind(product_id=cmd.product_id, buyer_id=cmd.buyer_id)

        async with self._uow_factory() as uow:
            product = await uow.products.get(cmd.product_id)
            if product is None:
                log.warning("purchase_rejected", reason="product_not_found")
                raise ProductNotFoundError(cmd.product_id)

            ban = await uow.bans.get_status(cmd.buyer_id)
            if ban.is_banned:
                log.warning("purchase_rejected", reason="buyer_banned")
                raise BuyerBannedError(cmd.buyer_id, ban.reason)

        if product.is_free:
            return PreparedPurchase(command=cmd, product=product, request=None)

        if not product.paypal_email:
            log.warning("purchase_rejected", reason="missing_payout_recipient")
            raise MissingPayoutRecipientError(product.id)

        request = PaymentRequest(
            amount=product.price,
            currency=self._currency,
            seller_recipient=product.paypal_email,
            product_name=product.title,
            product_id=product.id,
        )
        return PreparedPurchase(command=cmd, product=product, request=request)

    async def settle(
        self,
        prepared: PreparedPurchase,
        machine: SettlementStateMachine | None = None,
    ) -> PurchaseOutcome:
        """Settle a prepared purchase and record the result with its outbox events.

        Raises SettlementPersistError when the result cannot be written after
        retries; the error carries the outcome. An attempt interrupted by an
        exception is still recorded if the orchestrator reached a result.
        """
        cmd = prepared.command
        if prepared.request is None:
            logger.info("free_product_entitled", product_id=cmd.product_id, buyer_id=cmd.buyer_id)
            return PurchaseOutcome(settlement_id=None, result=None, entitled=True)

        machine = machine or SettlementStateMachine()
        try:
            result = await self._orchestrator.settle(
                prepared.request,
                machine,
                submission_key=cmd.submission_key,
            )
        except (Exception, asyncio.CancelledError):
            interrupted = machine.snapshot.result
            if interrupted is not None:
                # Already logged as critical by _persist; the original error propagates.
                with contextlib.suppress(SettlementPersistError):
                    await asyncio.shield(self._record(prepared, machine, interrupted))
            raise
        return await self._record(prepared, machine, result)

    async def _record(
        self,
        prepared: PreparedPurchase,
        machine: SettlementStateMachine,
        result: SettlementResult,
    ) -> PurchaseOutcome:
        cmd = prepared.command
        assert prepared.request is not None
        log = logger.bind(settlement_id=machine.settlement_id, product_id=cmd.product_id, buyer_id=cmd.buyer_id)
        entitled = is_entitled(prepared.product, result)
        outcome = PurchaseOutcome(
            settlement_id=machine.settlement_id,
            result=result,
            entitled=entitled,
            notice=buyer_notice(result, prepared.product.title),
        )

        record = SettlementRecord.create(
            settlement_id=machine.settlement_id,
            buyer_id=cmd.buyer_id,
            request=prepared.request,
            result=result,
        )
        events = settlement_events(record)

        try:
            await self._persist(record, prepared.product.id, entitled, events)
        except Exception as e:
            raise SettlementPersistError(outcome) from e

        log.info(
            "settlement_recorded",
            status=result.status.value,
            reason=result.reason.value if result.reason else None,
            entitled=entitled,
            events=[event.event_type for event in events],
        )
        return outcome

    async def _persist(
        self,
        record: SettlementRecord,
        product_id: str,
        entitled: bool,
        events: list[OutboxEvent],
    ) -> None:
        """Write the record, sales count and events in one transaction, retrying on failure."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._uow_factory() as uow:
                    await uow.settlements.add(record)
                    if entitled:
                        await uow.products.increment_sales(product_id)
                    for event in events:
                        await uow.outbox.add(event)
                    await uow.commit()
                return
            except Exception as e:
                if attempt >= self._persist_attempts:
                    logger.critical(
                        "settlement_persist_failed",
                        settlement_id=record.id,
                        order_id=record.order_id,
                        payment_id=record.payment_id,
                        payout_batch_id=record.payout_batch_id,
                        status=record.status.value,
                        reason=record.reason.value if record.reason else None,
                        error=str(e),
                        attempts=attempt,
                    )
                    raise
                delay = self._persist_retry_delay * attempt
                logger.warning(
                    "settlement_persist_retry",
                    settlement_id=record.id,
                    attempt=attempt,
                    next_delay_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def get_record(self, settlement_id: str) -> SettlementRecord | None:
        async with self._uow_factory() as uow:
            return await uow.settlements.get(settlement_id)

    async def check_entitlement(self, cmd: PurchaseCommand) -> bool:
        async with self._uow_factory() as uow:
            product = await uow.products.get(cmd.product_id)
            if product is None:
                raise ProductNotFoundError(cmd.product_id)
            if product.is_free:
                return True
            result = await uow.settlements.get_latest_result(cmd.buyer_id, cmd.product_id)
        return is_entitled(product, result)

    async def commission_report(self, days: int = 7) -> CommissionReport:
        if days <= 0:
            raise InvalidArgumentError("days", days, "must be positive")
        since = datetime.now(UTC) - timedelta(days=days)
        async with self._uow_factory() as uow:
            report = await uow.settlements.summarize_completed(since)
        logger.info(
            "commission_report_generated",
            days=days,
            total_sales=str(report.total_sales),
            total_commissions=str(report.total_commissions),
            products_sold=report.products_sold,
        )
        return report
