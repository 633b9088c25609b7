from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import structlog

from settlement_service.domain.exceptions import SettlementInProgressError


logger = structlog.get_logger()


class SubmissionGuard(Protocol):
    async def acquire(self, key: str) -> bool: ...

    async def release(self, key: str) -> None: ...


class InMemorySubmissionGuard:
    """Process-local guard; enough for a single API worker."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    async def acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    async def release(self, key: str) -> None:
        self._held.discard(key)

    def is_held(self, key: str) -> bool:
        return key in self._held


@asynccontextmanager
async def guarded_submission(guard: SubmissionGuard, key: str) -> AsyncIterator[None]:
    if not await guard.acquire(key):
        logger.warning("duplicate_submission_rejected", submission_key=key)
        raise SettlementInProgressError(key)
    try:
        yield
    finally:
        await guard.release(key)
