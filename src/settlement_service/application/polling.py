import asyncio
import contextlib
from collections.abc import Callable
from types import TracebackType
from typing import Self

from settlement_service.application.approval import ApprovalWindow


class IntervalPoller:
    """
    Calls ``check`` every ``interval`` seconds on a background task.

    The task stops as soon as the check returns True and is cancelled when the
    context exits, so nothing keeps polling after the caller has moved on.
    """

    def __init__(self, check: Callable[[], bool], interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._check = check
        self._interval = interval
        self._task: asyncio.Task[bool] | None = None
        self.polls = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> Self:
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def wait(self, timeout: float) -> bool:
        """True once the check succeeded, False if ``timeout`` elapsed first."""
        if self._task is None:
            raise RuntimeError("Poller not started. Use 'async with'.")
        try:
            return await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except TimeoutError:
            return False

    async def _run(self) -> bool:
        while True:
            await asyncio.sleep(self._interval)
            self.polls += 1
            if self._check():
                return True


async def wait_for_closure(window: ApprovalWindow, interval: float, timeout: float) -> bool:
    async with IntervalPoller(window.is_closed, interval) as poller:
        return await poller.wait(timeout)
