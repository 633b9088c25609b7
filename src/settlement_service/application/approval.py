"""
Buyer approval windows.

The orchestrator only needs to know whether the window where the buyer approves
the provider order has closed, and whether the provider sent the buyer to the
cancel URL. Closing a window never proves payment.
"""

from typing import Protocol

import structlog


logger = structlog.get_logger()


class ApprovalWindow(Protocol):
    @property
    def order_id(self) -> str: ...

    def is_closed(self) -> bool: ...

    def was_cancelled(self) -> bool: ...


class ApprovalWindowOpener(Protocol):
    async def open(self, approval_url: str, order_id: str) -> ApprovalWindow: ...


class RedirectApprovalWindow:
    """Window driven by provider redirects and client close reports."""

    def __init__(self, order_id: str, approval_url: str) -> None:
        self._order_id = order_id
        self.approval_url = approval_url
        self._closed = False
        self._cancelled = False

    @property
    def order_id(self) -> str:
        return self._order_id

    def is_closed(self) -> bool:
        return self._closed

    def was_cancelled(self) -> bool:
        return self._cancelled

    def close(self, *, cancelled: bool = False) -> None:
        self._closed = True
        if cancelled:
            self._cancelled = True


class RedirectApprovalRegistry:
    """Tracks open approval windows by provider order id.

    The buyer's browser opens ``approval_url`` itself; this registry only
    learns about the outcome through the return/cancel redirects or an
    explicit close report from the client.
    """

    def __init__(self) -> None:
        self._windows: dict[str, RedirectApprovalWindow] = {}

    async def open(self, approval_url: str, order_id: str) -> RedirectApprovalWindow:
        window = RedirectApprovalWindow(order_id=order_id, approval_url=approval_url)
        self._windows[order_id] = window
        logger.info("approval_window_opened", order_id=order_id)
        return window

    def get(self, order_id: str) -> RedirectApprovalWindow | None:
        return self._windows.get(order_id)

    def mark_returned(self, order_id: str) -> bool:
        return self._close(order_id, cancelled=False, source="return_redirect")

    def mark_cancelled(self, order_id: str) -> bool:
        return self._close(order_id, cancelled=True, source="cancel_redirect")

    def mark_closed(self, order_id: str) -> bool:
        return self._close(order_id, cancelled=False, source="client_report")

    def discard(self, order_id: str) -> None:
        self._windows.pop(order_id, None)

    def _close(self, order_id: str, *, cancelled: bool, source: str) -> bool:
        window = self._windows.get(order_id)
        if window is None:
            logger.warning("approval_window_unknown", order_id=order_id, source=source)
            return False
        window.close(cancelled=cancelled)
        logger.info("approval_window_closed", order_id=order_id, source=source, cancelled=cancelled)
        return True
