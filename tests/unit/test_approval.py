"""Unit tests for redirect-driven approval windows."""

import pytest

from settlement_service.application.approval import RedirectApprovalRegistry


class TestRedirectApprovalRegistry:
    """Tests for RedirectApprovalRegistry."""

    @pytest.mark.asyncio
    async def test_open_registers_window(self) -> None:
        """Opened windows are found by order id and start open."""
        registry = RedirectApprovalRegistry()

        window = await registry.open("https://paypal.test/approve", "ORDER-1")

        assert registry.get("ORDER-1") is window
        assert window.approval_url == "https://paypal.test/approve"
        assert window.is_closed() is False
        assert window.was_cancelled() is False

    @pytest.mark.asyncio
    async def test_return_redirect_closes_without_cancel(self) -> None:
        """Returning from the provider closes the window."""
        registry = RedirectApprovalRegistry()
        window = await registry.open("https://paypal.test/approve", "ORDER-1")

        assert registry.mark_returned("ORDER-1") is True

        assert window.is_closed() is True
        assert window.was_cancelled() is False

    @pytest.mark.asyncio
    async def test_cancel_redirect_marks_cancelled(self) -> None:
        """The cancel URL closes and cancels."""
        registry = RedirectApprovalRegistry()
        window = await registry.open("https://paypal.test/approve", "ORDER-1")

        registry.mark_cancelled("ORDER-1")

        assert window.is_closed() is True
        assert window.was_cancelled() is True

    @pytest.mark.asyncio
    async def test_client_close_report(self) -> None:
        """A plain close report only closes."""
        registry = RedirectApprovalRegistry()
        window = await registry.open("https://paypal.test/approve", "ORDER-1")

        registry.mark_closed("ORDER-1")

        assert window.is_closed() is True
        assert window.was_cancelled() is False

    def test_unknown_order_is_ignored(self) -> None:
        """Redirects for unknown orders return False."""
        registry = RedirectApprovalRegistry()

        assert registry.mark_returned("ORDER-404") is False
        assert registry.mark_cancelled("ORDER-404") is False

    @pytest.mark.asyncio
    async def test_discard(self) -> None:
        """Discarded windows are forgotten."""
        registry = RedirectApprovalRegistry()
        await registry.open("https://paypal.test/approve", "ORDER-1")

        registry.discard("ORDER-1")
        registry.discard("ORDER-1")

        assert registry.get("ORDER-1") is None
