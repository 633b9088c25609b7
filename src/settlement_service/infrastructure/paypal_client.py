"""
PayPal REST client for the split-payment flow.

Covers the four provider calls the settlement needs: OAuth2 client-credentials
token, order creation, order capture and a single-item payout batch.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
import structlog

from settlement_service.config import settings
from settlement_service.domain.exceptions import (
    AuthFailedError,
    CaptureFailedError,
    DuplicatePayoutBatchError,
    GatewayError,
    InvalidArgumentError,
    OrderCreateFailedError,
    OrderLookupFailedError,
    PayoutFailedError,
)
from settlement_service.domain.models import (
    CaptureResult,
    Order,
    OrderStatus,
    PaymentRequest,
    PayoutResult,
    format_amount,
    to_money,
)
from settlement_service.infrastructure.metrics import GATEWAY_REQUEST_DURATION, GATEWAY_REQUESTS_TOTAL


logger = structlog.get_logger()

DEFAULT_EMAIL_SUBJECT = "You have received a payment for your sale!"
MAX_RETRY_DELAY_SECONDS = 8.0
DUPLICATE_BATCH_ISSUES = frozenset({"DUPLICATE_REQUEST_ID", "SENDER_BATCH_ID_ALREADY_USED"})


def payout_batch_id(seed: str) -> str:
    """Deterministic sender batch id; the provider rejects a second batch with the same id."""
    return f"payout_batch_{seed}"


def is_duplicate_batch(error: GatewayError) -> bool:
    """True when the provider refused the payout because the batch id is taken."""
    if error.status_code is None or not 400 <= error.status_code < 500:
        return False
    if error.issue in DUPLICATE_BATCH_ISSUES:
        return True
    text = f"{error.issue or ''} {error.message}".lower()
    return "sender_batch_id" in text and "already exists" in text


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


class PayPalGatewayClient:
    provider = "paypal"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        *,
        brand_name: str | None = None,
        return_url: str | None = None,
        cancel_url: str | None = None,
        timeout: float | None = None,
        token_expiry_margin: float | None = None,
        payout_max_attempts: int | None = None,
        payout_retry_base_delay: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client_id = client_id or settings.paypal_client_id
        self._client_secret = client_secret or settings.paypal_client_secret
        self._base_url = (base_url or settings.resolved_paypal_base_url).rstrip("/")
        self._brand_name = brand_name or settings.brand_name
        self._return_url = return_url or settings.return_url
        self._cancel_url = cancel_url or settings.cancel_url
        self._token_margin = (
            token_expiry_margin if token_expiry_margin is not None else settings.paypal_token_expiry_margin_seconds
        )
        self._payout_max_attempts = max(1, payout_max_attempts or settings.paypal_payout_max_attempts)
        self._retry_base_delay = (
            payout_retry_base_delay
            if payout_retry_base_delay is not None
            else settings.paypal_payout_retry_base_delay_seconds
        )
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout or settings.paypal_timeout_seconds)
        self._clock = clock
        self._sleep = sleep
        self._token: AccessToken | None = None

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def get_access_token(self) -> str:
        now = self._clock()
        if self._token is not None and self._token.is_fresh(now, self._token_margin):
            return self._token.value

        try:
            response = await self._http.post(
                f"{self._base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            GATEWAY_REQUESTS_TOTAL.labels(operation="auth", outcome="transport_error").inc()
            raise AuthFailedError(f"Token request failed: {e}", provider=self.provider) from e

        if not response.is_success:
            GATEWAY_REQUESTS_TOTAL.labels(operation="auth", outcome="http_error").inc()
            raise self._error_from_response(AuthFailedError, response)

        payload = self._json(response, AuthFailedError)
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthFailedError("Token response carried no access_token", provider=self.provider)

        GATEWAY_REQUESTS_TOTAL.labels(operation="auth", outcome="ok").inc()
        self._token = AccessToken(
            value=access_token,
            expires_at=now + float(payload.get("expires_in", 0)),
        )
        logger.info("gateway_token_acquired", provider=self.provider, expires_in=payload.get("expires_in"))
        return access_token

    async def create_order(self, request: PaymentRequest) -> Order:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": request.currency,
                        "value": format_amount(request.amount),
                    },
                    "description": request.product_name,
                    "custom_id": f"product_{request.product_id}",
                }
            ],
            "application_context": {
                "return_url": self._return_url,
                "cancel_url": self._cancel_url,
                "brand_name": self._brand_name,
                "user_action": "PAY_NOW",
            },
        }
        response = await self._call(
            OrderCreateFailedError,
            "POST",
            "/v2/checkout/orders",
            json_body=body,
        )
        payload = self._json(response, OrderCreateFailedError)

        order_id = payload.get("id")
        approval_url = next(
            (link.get("href") for link in payload.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        if not order_id or not approval_url:
            raise OrderCreateFailedError(
                "Order response has no approve link",
                provider=self.provider,
                status_code=response.status_code,
                debug_id=response.headers.get("PayPal-Debug-Id"),
            )

        logger.info("gateway_order_created", order_id=order_id, product_id=request.product_id)
        return Order(
            order_id=order_id,
            approval_url=approval_url,
            status=OrderStatus.from_provider(payload.get("status", "CREATED")),
        )

    async def get_order(self, order_id: str) -> Order:
        response = await self._call(OrderLookupFailedError, "GET", f"/v2/checkout/orders/{order_id}")
        payload = self._json(response, OrderLookupFailedError)
        approval_url = next(
            (link.get("href") for link in payload.get("links") or [] if link.get("rel") == "approve"),
            "",
        )
        return Order(
            order_id=payload.get("id", order_id),
            approval_url=approval_url,
            status=OrderStatus.from_provider(payload.get("status", "")),
        )

    async def capture_order(self, order_id: str) -> CaptureResult:
        response = await self._call(
            CaptureFailedError,
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            extra_headers={"PayPal-Request-Id": f"capture_{order_id}"},
        )
        payload = self._json(response, CaptureFailedError)

        status = payload.get("status", "")
        if status != "COMPLETED":
            raise CaptureFailedError(
                f"Capture for order {order_id} ended in status {status or 'UNKNOWN'}",
                provider=self.provider,
                status_code=response.status_code,
                debug_id=response.headers.get("PayPal-Debug-Id"),
                issue=status or None,
            )

        capture = self._first_capture(payload)
        amount: Decimal | None = None
        currency: str | None = None
        captured_amount = capture.get("amount") or {}
        if "value" in captured_amount:
            try:
                amount = to_money(captured_amount["value"], "captured_amount")
            except InvalidArgumentError:
                logger.error("gateway_capture_amount_unparseable", order_id=order_id, value=captured_amount["value"])
            currency = captured_amount.get("currency_code")

        result = CaptureResult(
            order_id=payload.get("id", order_id),
            capture_id=capture.get("id") or payload.get("id", order_id),
            status=status,
            amount=amount,
            currency=currency,
        )
        logger.info(
            "gateway_order_captured",
            order_id=order_id,
            capture_id=result.capture_id,
            amount=str(amount) if amount is not None else None,
            currency=currency,
        )
        return result

    async def payout(
        self,
        recipient: str,
        amount: Decimal,
        currency: str,
        note: str,
        batch_id_seed: str,
        *,
        email_subject: str = DEFAULT_EMAIL_SUBJECT,
        email_message: str = "",
        sender_item_id: str | None = None,
    ) -> PayoutResult:
        sender_batch_id = payout_batch_id(batch_id_seed)
        body = {
            "sender_batch_header": {
                "sender_batch_id": sender_batch_id,
                "email_subject": email_subject,
                "email_message": email_message,
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {
                        "value": format_amount(amount),
                        "currency_code": currency,
                    },
                    "receiver": recipient,
                    "note": note,
                    "sender_item_id": sender_item_id or f"{sender_batch_id}_item",
                }
            ],
        }
        try:
            response = await self._call(
                PayoutFailedError,
                "POST",
                "/v1/payments/payouts",
                json_body=body,
                attempts=self._payout_max_attempts,
            )
        except PayoutFailedError as e:
            if not is_duplicate_batch(e):
                raise
            logger.error("gateway_payout_batch_exists", sender_batch_id=sender_batch_id, debug_id=e.debug_id)
            raise DuplicatePayoutBatchError(
                f"Payout batch {sender_batch_id} already exists; the seller may already be paid",
                sender_batch_id=sender_batch_id,
                provider=self.provider,
                status_code=e.status_code,
                debug_id=e.debug_id,
                issue=e.issue,
            ) from e
        payload = self._json(response, PayoutFailedError)

        header = payload.get("batch_header") or {}
        batch_id = header.get("payout_batch_id")
        if not batch_id:
            raise PayoutFailedError(
                "Payout response has no payout_batch_id",
                provider=self.provider,
                status_code=response.status_code,
                debug_id=response.headers.get("PayPal-Debug-Id"),
            )

        logger.info(
            "gateway_payout_created",
            sender_batch_id=sender_batch_id,
            payout_batch_id=batch_id,
            batch_status=header.get("batch_status"),
        )
        return PayoutResult(
            payout_batch_id=batch_id,
            sender_batch_id=sender_batch_id,
            batch_status=header.get("batch_status"),
        )

    async def _call(
        self,
        error_cls: type[GatewayError],
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        attempts: int = 1,
    ) -> httpx.Response:
        """Send an authenticated request; transport errors are retried up to ``attempts``."""
        operation = error_cls.operation
        token = await self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **(extra_headers or {}),
        }

        attempt = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                response = await self._http.request(
                    method,
                    f"{self._base_url}{path}",
                    json=json_body,
                    headers=headers,
                )
            except httpx.TransportError as e:
                GATEWAY_REQUEST_DURATION.labels(operation=operation).observe(time.perf_counter() - start)
                GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="transport_error").inc()
                if attempt < attempts:
                    delay = self._calculate_backoff_delay(attempt - 1)
                    logger.warning(
                        "gateway_retry_scheduled",
                        operation=operation,
                        attempt=attempt,
                        next_delay_seconds=delay,
                        error=str(e),
                    )
                    await self._sleep(delay)
                    continue
                raise error_cls(f"{operation} transport error: {e}", provider=self.provider) from e

            GATEWAY_REQUEST_DURATION.labels(operation=operation).observe(time.perf_counter() - start)
            if not response.is_success:
                GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="http_error").inc()
                raise self._error_from_response(error_cls, response)

            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, outcome="ok").inc()
            return response

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay: float = min(self._retry_base_delay * (2**retry_count), MAX_RETRY_DELAY_SECONDS)
        jitter: float = random.uniform(0, delay * 0.1)
        return delay + jitter

    def _error_from_response(self, error_cls: type[GatewayError], response: httpx.Response) -> GatewayError:
        issue: str | None = None
        message = f"{error_cls.operation} failed with HTTP {response.status_code}"
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            details = payload.get("details") or []
            if details and isinstance(details[0], dict):
                issue = details[0].get("issue")
            issue = issue or payload.get("name") or payload.get("error")
            if payload.get("message"):
                message = f"{message}: {payload['message']}"

        debug_id = response.headers.get("PayPal-Debug-Id")
        if debug_id is None and isinstance(payload, dict):
            debug_id = payload.get("debug_id")

        logger.warning(
            "gateway_request_rejected",
            operation=error_cls.operation,
            status_code=response.status_code,
            issue=issue,
            debug_id=debug_id,
        )
        return error_cls(
            message,
            provider=self.provider,
            status_code=response.status_code,
            debug_id=debug_id,
            issue=issue,
        )

    def _json(self, response: httpx.Response, error_cls: type[GatewayError]) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise error_cls(
                f"{error_cls.operation} returned a non-JSON body",
                provider=self.provider,
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise error_cls(
                f"{error_cls.operation} returned an unexpected body",
                provider=self.provider,
                status_code=response.status_code,
            )
        return payload

    @staticmethod
    def _first_capture(payload: dict[str, Any]) -> dict[str, Any]:
        units = payload.get("purchase_units") or [{}]
        captures = ((units[0] or {}).get("payments") or {}).get("captures") or [{}]
        return captures[0] or {}
