"""Unit tests for submission guards."""

from unittest.mock import AsyncMock, patch

import pytest

from settlement_service.application.guards import InMemorySubmissionGuard, guarded_submission
from settlement_service.domain.exceptions import SettlementInProgressError
from settlement_service.infrastructure.submission_guard import RELEASE_SCRIPT, RedisSubmissionGuard


class TestInMemorySubmissionGuard:
    """Tests for InMemorySubmissionGuard."""

    @pytest.mark.asyncio
    async def test_acquire_release(self) -> None:
        """A key can be held once at a time."""
        guard = InMemorySubmissionGuard()

        assert await guard.acquire("buyer-1:prod-001") is True
        assert await guard.acquire("buyer-1:prod-001") is False
        assert await guard.acquire("buyer-2:prod-001") is True

        await guard.release("buyer-1:prod-001")

        assert guard.is_held("buyer-1:prod-001") is False
        assert guard.is_held("buyer-2:prod-001") is True


class TestGuardedSubmission:
    """Tests for guarded_submission()."""

    @pytest.mark.asyncio
    async def test_duplicate_raises(self) -> None:
        """A held key raises SettlementInProgressError."""
        guard = InMemorySubmissionGuard()

        async with guarded_submission(guard, "buyer-1:prod-001"):
            with pytest.raises(SettlementInProgressError) as exc_info:
                async with guarded_submission(guard, "buyer-1:prod-001"):
                    pass

        assert exc_info.value.submission_key == "buyer-1:prod-001"

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        """The key is released even when the body raises."""
        guard = InMemorySubmissionGuard()

        with pytest.raises(RuntimeError):
            async with guarded_submission(guard, "buyer-1:prod-001"):
                raise RuntimeError("boom")

        assert guard.is_held("buyer-1:prod-001") is False


class TestRedisSubmissionGuard:
    """Tests for RedisSubmissionGuard with a mocked client."""

    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_with_ttl(self) -> None:
        """Acquire is a single SET NX EX."""
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=True)
        guard = RedisSubmissionGuard(redis_client, ttl_seconds=120)

        assert await guard.acquire("buyer-1:prod-001") is True

        args, kwargs = redis_client.set.call_args
        assert args[0] == "settlement:inflight:buyer-1:prod-001"
        assert len(args[1]) == 26
        assert kwargs == {"nx": True, "ex": 120}

    @pytest.mark.asyncio
    async def test_busy_key_logs_warning(self) -> None:
        """A taken key is reported and not acquired."""
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=None)
        guard = RedisSubmissionGuard(redis_client)

        with patch("settlement_service.infrastructure.submission_guard.logger") as mock_logger:
            assert await guard.acquire("buyer-1:prod-001") is False

        mock_logger.warning.assert_called_once_with("submission_lock_busy", submission_key="buyer-1:prod-001")

    @pytest.mark.asyncio
    async def test_release_compares_token(self) -> None:
        """Release deletes only if the stored token is still ours."""
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=True)
        redis_client.eval = AsyncMock(return_value=1)
        guard = RedisSubmissionGuard(redis_client)

        await guard.acquire("buyer-1:prod-001")
        token = redis_client.set.call_args.args[1]
        await guard.release("buyer-1:prod-001")

        redis_client.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "settlement:inflight:buyer-1:prod-001", token)

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self) -> None:
        """A guard that never held the key does not touch Redis."""
        redis_client = AsyncMock()
        guard = RedisSubmissionGuard(redis_client)

        await guard.release("buyer-1:prod-001")

        redis_client.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_lock_is_reported(self) -> None:
        """If the TTL expired first the release logs a warning."""
        redis_client = AsyncMock()
        redis_client.set = AsyncMock(return_value=True)
        redis_client.eval = AsyncMock(return_value=0)
        guard = RedisSubmissionGuard(redis_client)

        await guard.acquire("buyer-1:prod-001")
        with patch("settlement_service.infrastructure.submission_guard.logger") as mock_logger:
            await guard.release("buyer-1:prod-001")

        mock_logger.warning.assert_called_once_with(
            "submission_lock_expired_before_release", submission_key="buyer-1:prod-001"
        )
