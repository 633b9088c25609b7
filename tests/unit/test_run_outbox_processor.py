"""Unit tests for the outbox worker entrypoint."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from scripts.run_outbox_processor import run


class TestRun:
    """Tests for run()."""

    @pytest.mark.asyncio
    async def test_returns_when_processor_gives_up(self) -> None:
        """A tripped circuit breaker ends the worker and stop() still runs."""
        processor = MagicMock()
        processor.start = AsyncMock(return_value=None)
        processor.stop = AsyncMock()

        await asyncio.wait_for(run(processor), timeout=5.0)

        processor.start.assert_awaited_once()
        processor.stop.assert_awaited_once()
