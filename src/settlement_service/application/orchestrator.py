"""
Settlement orchestrator.

Drives one purchase attempt from order creation to seller payout:

    IDLE -> CREATING -> AWAITING_APPROVAL -> CAPTURING -> PAYING_OUT -> COMPLETED

Any non-terminal state may end in FAILED with a reason. Provider errors never
leave this module; callers only ever see a SettlementResult. A run interrupted
by cancellation or an unexpected error still leaves the machine FAILED before
the exception propagates.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import structlog

from settlement_service.application.approval import ApprovalWindow, ApprovalWindowOpener
from settlement_service.application.guards import InMemorySubmissionGuard, SubmissionGuard, guarded_submission
from settlement_service.application.notifications import LoggingOperatorAlerter, OperatorAlerter
from settlement_service.application.polling import wait_for_closure
from settlement_service.config import settings
from settlement_service.domain.commission import CommissionSplit, split
from settlement_service.domain.exceptions import (
    AuthFailedError,
    DuplicatePayoutBatchError,
    GatewayError,
    InvalidArgumentError,
)
from settlement_service.domain.models import (
    CaptureResult,
    FailureReason,
    Order,
    OrderStatus,
    PaymentRequest,
    PayoutResult,
    SettlementResult,
    SettlementStatus,
)
from settlement_service.domain.state_machine import (
    SettlementSnapshot,
    SettlementState,
    SettlementStateMachine,
)
from settlement_service.infrastructure.metrics import (
    SETTLEMENT_TRANSITIONS_TOTAL,
    SETTLEMENTS_TOTAL,
    track_settlement_duration,
)


logger = structlog.get_logger()


class PaymentGateway(Protocol):
    async def create_order(self, request: PaymentRequest) -> Order: ...

    async def get_order(self, order_id: str) -> Order: ...

    async def capture_order(self, order_id: str) -> CaptureResult: ...

    async def payout(
        self,
        recipient: str,
        amount: Decimal,
        currency: str,
        note: str,
        batch_id_seed: str,
        *,
        email_message: str = "",
        sender_item_id: str | None = None,
    ) -> PayoutResult: ...


def _count_transition(snapshot: SettlementSnapshot) -> None:
    SETTLEMENT_TRANSITIONS_TOTAL.labels(to_state=snapshot.state.value).inc()


@dataclass
class _Attempt:
    """Provider-side progress of a running attempt."""

    order_id: str | None = None
    capture: CaptureResult | None = None
    commission: CommissionSplit | None = None


class SettlementOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        window_opener: ApprovalWindowOpener,
        *,
        commission_rate: Decimal | None = None,
        poll_interval: float | None = None,
        approval_timeout: float | None = None,
        alerter: OperatorAlerter | None = None,
        guard: SubmissionGuard | None = None,
    ) -> None:
        self._gateway = gateway
        self._window_opener = window_opener
        self._commission_rate = commission_rate if commission_rate is not None else settings.commission_rate
        self._poll_interval = poll_interval or settings.approval_poll_interval_seconds
        self._approval_timeout = approval_timeout or settings.approval_timeout_seconds
        self._alerter = alerter or LoggingOperatorAlerter()
        self._guard = guard or InMemorySubmissionGuard()

    @property
    def commission_rate(self) -> Decimal:
        return self._commission_rate

    @track_settlement_duration
    async def settle(
        self,
        request: PaymentRequest,
        machine: SettlementStateMachine | None = None,
        submission_key: str | None = None,
    ) -> SettlementResult:
        """Run one settlement attempt.

        Raises SettlementInProgressError, before any provider call, when
        ``submission_key`` is already held by an attempt in flight.
        """
        machine = machine or SettlementStateMachine()
        if submission_key is None:
            return await self._run(request, machine)
        async with guarded_submission(self._guard, submission_key):
            return await self._run(request, machine)

    async def _run(self, request: PaymentRequest, machine: SettlementStateMachine) -> SettlementResult:
        log = logger.bind(settlement_id=machine.settlement_id, product_id=request.product_id)
        unsubscribe = machine.subscribe(_count_transition)
        attempt = _Attempt()
        try:
            return await self._drive(request, machine, log, attempt)
        except asyncio.CancelledError:
            log.warning("settlement_interrupted", state=machine.state.value)
            await self._abandon(machine, log, request, attempt, cause="cancelled")
            raise
        except Exception as e:
            log.exception("settlement_unexpected_error", state=machine.state.value)
            await self._abandon(machine, log, request, attempt, cause=type(e).__name__)
            raise
        finally:
            unsubscribe()

    async def _abandon(
        self,
        machine: SettlementStateMachine,
        log: structlog.stdlib.BoundLogger,
        request: PaymentRequest,
        attempt: _Attempt,
        *,
        cause: str,
    ) -> None:
        """Fail an interrupted attempt so it never stays mid-flight.

        Once capture was requested the buyer may have paid, so the seller
        share goes to the operator as a failed payout. An interrupted payout
        call may have reached the provider and is flagged as possibly paid.
        """
        state = machine.state
        if state.is_terminal:
            return
        order_id = attempt.order_id
        if state not in (SettlementState.CAPTURING, SettlementState.PAYING_OUT):
            self._fail(machine, log, FailureReason.CAPTURE_FAILED, order_id=order_id)
            return

        commission = attempt.commission
        await self._payout_failed(
            machine,
            log,
            request,
            order_id=order_id or "",
            payment_id=attempt.capture.capture_id if attempt.capture else "",
            seller_share=commission.seller_share if commission else Decimal("0.00"),
            platform_share=commission.platform_share if commission else Decimal("0.00"),
            error=f"settlement interrupted: {cause}",
            possibly_paid=state is SettlementState.PAYING_OUT,
        )

    async def _drive(
        self,
        request: PaymentRequest,
        machine: SettlementStateMachine,
        log: structlog.stdlib.BoundLogger,
        attempt: _Attempt,
    ) -> SettlementResult:
        machine.transition(SettlementState.CREATING)
        log.info(
            "settlement_started",
            step="1/4",
            amount=str(request.amount),
            currency=request.currency,
        )

        try:
            order = await self._gateway.create_order(request)
        except AuthFailedError as e:
            return self._fail(machine, log, FailureReason.AUTH_FAILED, error=e)
        except GatewayError as e:
            return self._fail(machine, log, FailureReason.ORDER_CREATE_FAILED, error=e)

        attempt.order_id = order.order_id
        log = log.bind(order_id=order.order_id)
        window = await self._window_opener.open(order.approval_url, order.order_id)
        machine.transition(
            SettlementState.AWAITING_APPROVAL,
            order_id=order.order_id,
            approval_url=order.approval_url,
        )
        log.info("awaiting_buyer_approval", step="2/4", timeout_seconds=self._approval_timeout)

        closed = await wait_for_closure(window, self._poll_interval, self._approval_timeout)
        if not closed:
            return self._fail(machine, log, FailureReason.TIMEOUT, order_id=order.order_id)

        if not await self._approval_confirmed(window, log):
            return self._fail(machine, log, FailureReason.CANCELLED, order_id=order.order_id)

        machine.transition(SettlementState.CAPTURING)
        log.info("capturing_order", step="3/4")
        try:
            capture = await self._gateway.capture_order(order.order_id)
        except AuthFailedError as e:
            return self._fail(machine, log, FailureReason.AUTH_FAILED, error=e, order_id=order.order_id)
        except GatewayError as e:
            return self._fail(machine, log, FailureReason.CAPTURE_FAILED, error=e, order_id=order.order_id)

        attempt.capture = capture
        log = log.bind(payment_id=capture.capture_id)
        commission = self._split_captured(request, capture, log)
        if commission is None:
            return await self._payout_failed(
                machine,
                log,
                request,
                order_id=capture.order_id,
                payment_id=capture.capture_id,
                seller_share=Decimal("0.00"),
                platform_share=Decimal("0.00"),
                error="captured amount could not be confirmed",
            )
        attempt.commission = commission

        machine.transition(SettlementState.PAYING_OUT)
        log.info(
            "paying_out_seller",
            step="4/4",
            seller_share=str(commission.seller_share),
            platform_share=str(commission.platform_share),
        )

        if commission.seller_share == 0:
            log.info("seller_payout_skipped", reason="zero_seller_share")
            return self._complete(machine, log, capture, commission, payout_batch_id="")

        try:
            payout = await self._gateway.payout(
                request.seller_recipient,
                commission.seller_share,
                request.currency,
                f"Payment for the sale of {request.product_name}",
                order.order_id,
                email_message=f'You have received a payment for the sale of "{request.product_name}".',
                sender_item_id=f"seller_payout_{request.product_id}_{order.order_id}",
            )
        except GatewayError as e:
            return await self._payout_failed(
                machine,
                log,
                request,
                order_id=capture.order_id,
                payment_id=capture.capture_id,
                seller_share=commission.seller_share,
                platform_share=commission.platform_share,
                error=str(e),
                gateway_error=e,
                possibly_paid=isinstance(e, DuplicatePayoutBatchError),
            )

        return self._complete(machine, log, capture, commission, payout_batch_id=payout.payout_batch_id)

    async def _approval_confirmed(self, window: ApprovalWindow, log: structlog.stdlib.BoundLogger) -> bool:
        """Window closure only triggers the check; the provider order status decides.

        A lookup failure falls through to the capture attempt, whose response
        is authoritative.
        """
        if window.was_cancelled():
            log.info("approval_cancelled", source="cancel_redirect")
            return False
        try:
            order = await self._gateway.get_order(window.order_id)
        except GatewayError as e:
            log.warning("approval_lookup_failed", **e.log_context())
            return True
        if order.status in (OrderStatus.APPROVED, OrderStatus.CAPTURED):
            return True
        log.info("approval_cancelled", source="provider_status", order_status=order.status.value)
        return False

    def _split_captured(
        self,
        request: PaymentRequest,
        capture: CaptureResult,
        log: structlog.stdlib.BoundLogger,
    ) -> CommissionSplit | None:
        if capture.amount is None:
            log.error("captured_amount_missing")
            return None
        if (capture.currency or "").upper() != request.currency.upper():
            log.error("captured_currency_mismatch", captured_currency=capture.currency, expected=request.currency)
            return None
        if capture.amount != request.amount:
            log.warning("captured_amount_differs", captured=str(capture.amount), requested=str(request.amount))
        try:
            return split(capture.amount, self._commission_rate)
        except InvalidArgumentError as e:
            log.error("commission_split_rejected", error=str(e))
            return None

    async def _payout_failed(
        self,
        machine: SettlementStateMachine,
        log: structlog.stdlib.BoundLogger,
        request: PaymentRequest,
        *,
        order_id: str,
        payment_id: str,
        seller_share: Decimal,
        platform_share: Decimal,
        error: str,
        gateway_error: GatewayError | None = None,
        possibly_paid: bool = False,
    ) -> SettlementResult:
        # The result is recorded first; a broken alert channel must not lose it.
        result = self._fail(
            machine,
            log,
            FailureReason.PAYOUT_FAILED,
            error=gateway_error,
            order_id=order_id,
            payment_id=payment_id,
            seller_payout=seller_share,
            platform_payout=platform_share,
        )
        try:
            await self._alerter.payout_failed(
                settlement_id=machine.settlement_id,
                order_id=order_id,
                payment_id=payment_id,
                seller_recipient=request.seller_recipient,
                seller_share=seller_share,
                currency=request.currency,
                error=error,
                possibly_paid=possibly_paid,
            )
        except Exception:
            log.exception("operator_alert_failed", seller_share=str(seller_share), possibly_paid=possibly_paid)
        return result

    def _complete(
        self,
        machine: SettlementStateMachine,
        log: structlog.stdlib.BoundLogger,
        capture: CaptureResult,
        commission: CommissionSplit,
        payout_batch_id: str,
    ) -> SettlementResult:
        result = SettlementResult.completed(
            payment_id=capture.capture_id,
            payout_batch_id=payout_batch_id,
            seller_payout=commission.seller_share,
            platform_payout=commission.platform_share,
            order_id=capture.order_id,
        )
        machine.complete(result)
        SETTLEMENTS_TOTAL.labels(status=SettlementStatus.COMPLETED.value, reason="").inc()
        log.info("settlement_completed", payout_batch_id=payout_batch_id)
        return result

    def _fail(
        self,
        machine: SettlementStateMachine,
        log: structlog.stdlib.BoundLogger,
        reason: FailureReason,
        *,
        error: GatewayError | None = None,
        order_id: str | None = None,
        payment_id: str = "",
        seller_payout: Decimal = Decimal("0.00"),
        platform_payout: Decimal = Decimal("0.00"),
    ) -> SettlementResult:
        result = SettlementResult.failed(
            reason,
            order_id=order_id,
            payment_id=payment_id,
            seller_payout=seller_payout,
            platform_payout=platform_payout,
        )
        machine.fail(reason, result)
        SETTLEMENTS_TOTAL.labels(status=SettlementStatus.FAILED.value, reason=reason.value).inc()

        context = error.log_context() if error is not None else {}
        if reason is FailureReason.CANCELLED:
            log.info("settlement_cancelled")
        else:
            log.warning("settlement_failed", reason=reason.value, state=machine.history[-2].value, **context)
        return result
