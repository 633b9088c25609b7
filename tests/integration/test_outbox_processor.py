"""Integration tests for OutboxProcessor relaying settlement events."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.errors import KafkaError
from prometheus_client import REGISTRY

from settlement_service.domain.models import OutboxEvent
from settlement_service.infrastructure.event_publisher import OutboxProcessor, event_envelope, topic_for


SETTLEMENT_ID = "01HW8BS0000000000000000001"


def create_event(
    event_id: str = "01HW8B00000000000000000001",
    event_type: str = "SettlementCompleted",
    retry_count: int = 0,
) -> OutboxEvent:
    return OutboxEvent(
        id=event_id,
        aggregate_type="Settlement",
        aggregate_id=SETTLEMENT_ID,
        event_type=event_type,
        payload={"settlement_id": SETTLEMENT_ID, "amount": "49.99", "currency": "USD"},
        created_at=datetime(2026, 1, 15, 10, 30, 0, tzinfo=UTC),
        retry_count=retry_count,
    )


@pytest.fixture
def mock_database() -> MagicMock:
    """Create a mock database whose session is an async context manager."""
    db = MagicMock()
    session_mock = AsyncMock()
    session_mock.__aenter__ = AsyncMock(return_value=session_mock)
    session_mock.__aexit__ = AsyncMock(return_value=None)
    session_mock.commit = AsyncMock(return_value=None)
    db.session = MagicMock(return_value=session_mock)
    return db


class TestTopicNaming:
    """Tests for settlement topic names."""

    def test_topic_for_lowercases_event_type(self) -> None:
        """Event types map to lower-cased topic suffixes."""
        assert topic_for("settlements", "SettlementCompleted") == "settlements.settlementcompleted"
        assert topic_for("settlements", "PayoutFailed") == "settlements.payoutfailed"

    def test_dlq_topic_uses_prefix(self, mock_database: MagicMock) -> None:
        """Dead letters go to <prefix>.dlq."""
        processor = OutboxProcessor(database=mock_database, topic_prefix="market")

        assert processor.dlq_topic == "market.dlq"


class TestOutboxProcessor:
    """Tests for OutboxProcessor batch handling."""

    def test_custom_config(self, mock_database: MagicMock) -> None:
        """Constructor arguments override settings."""
        processor = OutboxProcessor(
            database=mock_database,
            batch_size=50,
            poll_interval=2.0,
            max_retries=3,
            base_delay=2.0,
            max_delay=120.0,
        )

        assert processor._batch_size == 50
        assert processor._poll_interval == 2.0
        assert processor._max_retries == 3
        assert processor._base_delay == 2.0
        assert processor._max_delay == 120.0

    def test_calculate_backoff_delay(self, mock_database: MagicMock) -> None:
        """Backoff doubles per retry, capped by max delay plus jitter."""
        processor = OutboxProcessor(database=mock_database, base_delay=1.0, max_delay=60.0)

        assert 1.0 <= processor._calculate_backoff_delay(0) <= 1.1
        assert 2.0 <= processor._calculate_backoff_delay(1) <= 2.2
        assert 4.0 <= processor._calculate_backoff_delay(2) <= 4.4
        assert processor._calculate_backoff_delay(10) <= 66.0

    @pytest.mark.asyncio
    async def test_publish_event_success(self, mock_database: MagicMock) -> None:
        """Successful publish sends the envelope keyed by settlement id."""
        processor = OutboxProcessor(database=mock_database, topic_prefix="settlements")
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(return_value=None)
        event = create_event()

        result = await processor._publish_event(event)

        assert result is True
        call_kwargs = processor._producer.send_and_wait.call_args.kwargs
        assert call_kwargs["topic"] == "settlements.settlementcompleted"
        assert call_kwargs["key"] == SETTLEMENT_ID
        assert call_kwargs["value"] == event_envelope(event)

    @pytest.mark.asyncio
    async def test_publish_event_failure(self, mock_database: MagicMock) -> None:
        """Kafka errors are reported as an unsuccessful publish."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(side_effect=KafkaError("Connection failed"))

        assert await processor._publish_event(create_event()) is False

    @pytest.mark.asyncio
    async def test_publish_event_no_producer(self, mock_database: MagicMock) -> None:
        """Publishing without a producer returns False."""
        processor = OutboxProcessor(database=mock_database)

        assert await processor._publish_event(create_event()) is False

    @pytest.mark.asyncio
    async def test_process_batch_empty(self, mock_database: MagicMock) -> None:
        """Empty outbox yields zero processed events."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()

        with patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls:
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=[])
            mock_repo_cls.return_value = mock_repo

            assert await processor._process_batch() == 0

    @pytest.mark.asyncio
    async def test_process_batch_marks_published(self, mock_database: MagicMock) -> None:
        """Published events are marked in one call and the session is committed."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(return_value=None)
        events = [
            create_event("01HW8B00000000000000000001", "SettlementCompleted"),
            create_event("01HW8B00000000000000000002", "PayoutFailed"),
        ]

        with patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls:
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=events)
            mock_repo.count_pending = AsyncMock(return_value=0)
            mock_repo_cls.return_value = mock_repo

            count = await processor._process_batch()

        assert count == 2
        mock_repo.mark_published.assert_called_once_with([event.id for event in events])
        mock_database.session.return_value.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_process_batch_retries_failed_publish(self, mock_database: MagicMock) -> None:
        """A failed publish increments the retry count instead of marking it published."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(side_effect=KafkaError("broker down"))
        event = create_event()

        with patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls:
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=[event])
            mock_repo.count_pending = AsyncMock(return_value=0)
            mock_repo_cls.return_value = mock_repo

            await processor._process_batch()

        mock_repo.increment_retry_count.assert_called_once_with(event.id)
        mock_repo.mark_published.assert_not_called()

    @pytest.mark.asyncio
    async def test_process_batch_dead_letters_exhausted_events(self, mock_database: MagicMock) -> None:
        """Events past max retries go to the DLQ and are not published normally."""
        processor = OutboxProcessor(database=mock_database, max_retries=5, topic_prefix="settlements")
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(return_value=None)
        event = create_event(retry_count=5)

        with patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls:
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=[event])
            mock_repo.count_pending = AsyncMock(return_value=0)
            mock_repo_cls.return_value = mock_repo

            await processor._process_batch()

        call_kwargs = processor._producer.send_and_wait.call_args.kwargs
        assert call_kwargs["topic"] == "settlements.dlq"
        assert call_kwargs["value"]["error"] == "max_retries_exceeded"
        assert call_kwargs["value"]["retry_count"] == 5
        mock_repo.mark_published.assert_called_once_with([event.id])

    @pytest.mark.asyncio
    async def test_process_batch_samples_pending_gauge(self, mock_database: MagicMock) -> None:
        """The pending gauge reflects what is left after the batch."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(side_effect=KafkaError("broker down"))

        with patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls:
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=[create_event()])
            mock_repo.count_pending = AsyncMock(return_value=7)
            mock_repo_cls.return_value = mock_repo

            await processor._process_batch()

        assert REGISTRY.get_sample_value("outbox_pending_events") == 7.0

    @pytest.mark.asyncio
    async def test_dlq_failure_leaves_event_unpublished(self, mock_database: MagicMock) -> None:
        """If the DLQ itself is unreachable the event stays in the outbox."""
        processor = OutboxProcessor(database=mock_database)
        processor._producer = AsyncMock()
        processor._producer.send_and_wait = AsyncMock(side_effect=KafkaError("dlq down"))
        mock_outbox_repo = AsyncMock()

        await processor._send_to_dlq([create_event(retry_count=9)], mock_outbox_repo)

        mock_outbox_repo.mark_published.assert_not_called()


class TestOutboxProcessorLifecycle:
    """Tests for OutboxProcessor start/stop lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_stop_manage_producer(self, mock_database: MagicMock) -> None:
        """start() opens an idempotent producer and stop() closes it once."""
        processor = OutboxProcessor(database=mock_database, poll_interval=0.01)

        with (
            patch("settlement_service.infrastructure.event_publisher.AIOKafkaProducer") as mock_producer_cls,
            patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls,
        ):
            mock_producer = AsyncMock()
            mock_producer_cls.return_value = mock_producer
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(return_value=[])
            mock_repo_cls.return_value = mock_repo

            async def stop_after_delay() -> None:
                await asyncio.sleep(0.05)
                await processor.stop()

            await asyncio.gather(processor.start(), stop_after_delay())

        mock_producer.start.assert_called_once()
        mock_producer.stop.assert_called_once()
        assert mock_producer_cls.call_args.kwargs["enable_idempotence"] is True
        assert mock_producer_cls.call_args.kwargs["acks"] == "all"
        assert processor._producer is None

    @pytest.mark.asyncio
    async def test_circuit_breaker_stops_processor(self, mock_database: MagicMock) -> None:
        """Consecutive batch failures trip the circuit breaker and end start()."""
        processor = OutboxProcessor(database=mock_database, poll_interval=0.001)

        with (
            patch("settlement_service.infrastructure.event_publisher.AIOKafkaProducer") as mock_producer_cls,
            patch("settlement_service.infrastructure.event_publisher.OutboxRepository") as mock_repo_cls,
        ):
            mock_producer_cls.return_value = AsyncMock()
            mock_repo = AsyncMock()
            mock_repo.get_unpublished = AsyncMock(side_effect=RuntimeError("database unavailable"))
            mock_repo_cls.return_value = mock_repo

            await asyncio.wait_for(processor.start(), timeout=5.0)

        assert processor._consecutive_failures == OutboxProcessor.MAX_CONSECUTIVE_FAILURES
        assert processor._running is False
