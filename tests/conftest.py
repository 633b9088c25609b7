"""Shared pytest fixtures for settlement service tests."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from settlement_service.application.unit_of_work import UnitOfWork, UnitOfWorkFactory
from settlement_service.domain.exceptions import GatewayError
from settlement_service.domain.models import (
    CaptureResult,
    Order,
    OrderStatus,
    PaymentRequest,
    PayoutResult,
    Product,
)
from settlement_service.infrastructure.paypal_client import payout_batch_id
from settlement_service.infrastructure.repositories import BanStatus


@pytest.fixture
def mock_product_repository() -> AsyncMock:
    """Create mock ProductRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.increment_sales = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_ban_repository() -> AsyncMock:
    """Create mock BanRepository that reports nobody as banned."""
    repo = AsyncMock()
    repo.get_status = AsyncMock(return_value=BanStatus(is_banned=False))
    return repo


@pytest.fixture
def mock_settlement_repository() -> AsyncMock:
    """Create mock SettlementRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=None)
    repo.get = AsyncMock(return_value=None)
    repo.get_latest_result = AsyncMock(return_value=None)
    repo.summarize_completed = AsyncMock()
    return repo


@pytest.fixture
def mock_outbox_repository() -> AsyncMock:
    """Create mock OutboxRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=MagicMock())
    repo.get_unpublished = AsyncMock(return_value=[])
    repo.mark_published = AsyncMock(return_value=None)
    repo.increment_retry_count = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_uow(
    mock_product_repository: AsyncMock,
    mock_ban_repository: AsyncMock,
    mock_settlement_repository: AsyncMock,
    mock_outbox_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.products = mock_product_repository
    uow.bans = mock_ban_repository
    uow.settlements = mock_settlement_repository
    uow.outbox = mock_outbox_repository
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


@pytest.fixture
def uow_factory(mock_uow: AsyncMock) -> UnitOfWorkFactory:
    """Factory that always hands out the same mock Unit of Work."""

    @asynccontextmanager
    async def factory() -> AsyncIterator[AsyncMock]:
        yield mock_uow

    return factory


@pytest.fixture
def paid_product() -> Product:
    """Create a paid product with a payout address."""
    return create_product()


@pytest.fixture
def free_product() -> Product:
    """Create a free product."""
    return create_product(product_id="prod-free", price=Decimal("0.00"), is_free=True, paypal_email=None)


@pytest.fixture
def payment_request() -> PaymentRequest:
    """Create the canonical 49.99 USD payment request."""
    return create_payment_request()


def create_product(
    product_id: str = "prod-001",
    title: str = "Pixel Art Pack",
    price: Decimal = Decimal("49.99"),
    is_free: bool = False,
    paypal_email: str | None = "seller@x.com",
    seller_id: str = "seller-001",
) -> Product:
    """Helper to create Product with custom values."""
    return Product(
        id=product_id,
        title=title,
        price=price,
        is_free=is_free,
        seller_id=seller_id,
        paypal_email=paypal_email,
    )


def create_payment_request(
    amount: Decimal = Decimal("49.99"),
    currency: str = "USD",
    seller_recipient: str = "seller@x.com",
    product_name: str = "Pixel Art Pack",
    product_id: str = "prod-001",
) -> PaymentRequest:
    """Helper to create PaymentRequest with custom values."""
    return PaymentRequest(
        amount=amount,
        currency=currency,
        seller_recipient=seller_recipient,
        product_name=product_name,
        product_id=product_id,
    )


class FakeWindow:
    """Approval window that reports closed after a number of polls."""

    def __init__(self, order_id: str, close_after_polls: int | None = 1, cancelled: bool = False) -> None:
        self._order_id = order_id
        self.close_after_polls = close_after_polls
        self.cancelled = cancelled
        self.polls = 0

    @property
    def order_id(self) -> str:
        return self._order_id

    def is_closed(self) -> bool:
        self.polls += 1
        return self.close_after_polls is not None and self.polls >= self.close_after_polls

    def was_cancelled(self) -> bool:
        return self.cancelled


class FakeWindowOpener:
    """Opener that records approval URLs and hands out FakeWindows."""

    def __init__(self, close_after_polls: int | None = 1, cancelled: bool = False) -> None:
        self.close_after_polls = close_after_polls
        self.cancelled = cancelled
        self.windows: list[FakeWindow] = []
        self.opened_urls: list[str] = []

    async def open(self, approval_url: str, order_id: str) -> FakeWindow:
        window = FakeWindow(order_id, self.close_after_polls, self.cancelled)
        self.windows.append(window)
        self.opened_urls.append(approval_url)
        return window


class FakeGateway:
    """In-memory payment gateway recording every call."""

    def __init__(
        self,
        order_id: str = "ORDER-1",
        approval_url: str = "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1",
        order_status: OrderStatus = OrderStatus.APPROVED,
        capture_id: str = "CAPTURE-1",
        captured_amount: Decimal | None = None,
        captured_currency: str | None = None,
        batch_id: str = "BATCH-1",
        create_error: GatewayError | None = None,
        lookup_error: GatewayError | None = None,
        capture_error: GatewayError | None = None,
        payout_error: GatewayError | None = None,
        payout_release: asyncio.Event | None = None,
    ) -> None:
        self.order_id = order_id
        self.approval_url = approval_url
        self.order_status = order_status
        self.capture_id = capture_id
        self.captured_amount = captured_amount
        self.captured_currency = captured_currency
        self.batch_id = batch_id
        self.create_error = create_error
        self.lookup_error = lookup_error
        self.capture_error = capture_error
        self.payout_error = payout_error
        self.payout_release = payout_release
        self.payout_started = asyncio.Event()
        self.calls: list[str] = []
        self.payouts: list[dict[str, Any]] = []
        self._request: PaymentRequest | None = None

    async def create_order(self, request: PaymentRequest) -> Order:
        self.calls.append("create_order")
        self._request = request
        if self.create_error:
            raise self.create_error
        return Order(order_id=self.order_id, approval_url=self.approval_url, status=OrderStatus.CREATED)

    async def get_order(self, order_id: str) -> Order:
        self.calls.append("get_order")
        if self.lookup_error:
            raise self.lookup_error
        return Order(order_id=order_id, approval_url="", status=self.order_status)

    async def capture_order(self, order_id: str) -> CaptureResult:
        self.calls.append("capture_order")
        if self.capture_error:
            raise self.capture_error
        assert self._request is not None
        return CaptureResult(
            order_id=order_id,
            capture_id=self.capture_id,
            status="COMPLETED",
            amount=self.captured_amount if self.captured_amount is not None else self._request.amount,
            currency=self.captured_currency or self._request.currency,
        )

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
    ) -> PayoutResult:
        self.calls.append("payout")
        self.payouts.append(
            {
                "recipient": recipient,
                "amount": amount,
                "currency": currency,
                "note": note,
                "sender_batch_id": payout_batch_id(batch_id_seed),
                "sender_item_id": sender_item_id,
                "email_message": email_message,
            }
        )
        self.payout_started.set()
        if self.payout_release is not None:
            await self.payout_release.wait()
        if self.payout_error:
            raise self.payout_error
        return PayoutResult(payout_batch_id=self.batch_id, sender_batch_id=payout_batch_id(batch_id_seed))
