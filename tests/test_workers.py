"""
Tests for the outbox publisher and the background workers.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
from sqlalchemy import select

from native_payments.core.ledger import LedgerWriter
from native_payments.core.outbox import OutboxPublisher
from native_payments.database.connection import get_session_factory
from native_payments.database.models import OutboxEvent
from native_payments.workers.outbox_publisher import RedisStreamPublisher
from native_payments.workers.snapshot_worker import run_nightly_snapshots, seconds_until_next_run


async def write_events(db, count: int) -> None:
    ledger = LedgerWriter(db)
    for number in range(count):
        ledger.write_outbox(
            "payment", f"pay_{number}", "payment.succeeded", {"amount_cents": 1000 + number}
        )
    await db.commit()


class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.asyncio
    async def test_process_batch_publishes_in_order(self, test_db) -> None:
        await write_events(test_db, 3)
        delivered: List[Dict[str, Any]] = []

        async def collect(event_data: Dict[str, Any]) -> None:
            delivered.append(event_data)

        publisher = OutboxPublisher(collect, batch_size=2, session_factory=get_session_factory())

        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 1
        assert await publisher.process_batch() == 0

        assert [event["aggregate_id"] for event in delivered] == ["pay_0", "pay_1", "pay_2"]
        assert delivered[0]["payload"] == {"amount_cents": 1000}
        assert await publisher.get_pending_count() == 0

        events = (await test_db.execute(select(OutboxEvent))).scalars().all()
        for event in events:
            await test_db.refresh(event)
        assert all(event.published_at is not None for event in events)

    @pytest.mark.asyncio
    async def test_failed_delivery_is_retried_later(self, test_db) -> None:
        await write_events(test_db, 2)
        attempts: List[str] = []

        async def flaky(event_data: Dict[str, Any]) -> None:
            attempts.append(event_data["aggregate_id"])
            if event_data["aggregate_id"] == "pay_0" and attempts.count("pay_0") == 1:
                raise ConnectionError("stream unavailable")

        publisher = OutboxPublisher(flaky, session_factory=get_session_factory())

        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 1
        assert await publisher.process_batch() == 1
        assert attempts == ["pay_0", "pay_1", "pay_0"]

    @pytest.mark.asyncio
    async def test_failure_holds_back_same_aggregate(self, test_db) -> None:
        ledger = LedgerWriter(test_db)
        ledger.write_outbox("payment", "pay_1", "payment.created", {})
        ledger.write_outbox("payment", "pay_1", "payment.succeeded", {})
        ledger.write_outbox("subscription", "sub_1", "subscription.renewed", {})
        await test_db.commit()
        delivered: List[str] = []
        fail_next = {"payment.created": True}

        async def publish(event_data: Dict[str, Any]) -> None:
            if fail_next.pop(event_data["event_type"], False):
                raise ConnectionError("stream unavailable")
            delivered.append(event_data["event_type"])

        publisher = OutboxPublisher(publish, session_factory=get_session_factory())

        assert await publisher.process_batch() == 1
        assert delivered == ["subscription.renewed"]

        assert await publisher.process_batch() == 2
        assert delivered[1:] == ["payment.created", "payment.succeeded"]

    @pytest.mark.asyncio
    async def test_event_parked_after_max_attempts(self, test_db) -> None:
        await write_events(test_db, 1)

        async def broken(event_data: Dict[str, Any]) -> None:
            raise ConnectionError("stream unavailable")

        publisher = OutboxPublisher(
            broken, session_factory=get_session_factory(), max_attempts=2
        )

        assert await publisher.process_batch() == 0
        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 0
        assert await publisher.get_parked_count() == 1

        event = (await test_db.execute(select(OutboxEvent))).scalar_one()
        await test_db.refresh(event)
        assert event.delivery_attempts == 2
        assert event.last_error == "ConnectionError: stream unavailable"

    @pytest.mark.asyncio
    async def test_default_publisher_logs_only(self, test_db) -> None:
        await write_events(test_db, 1)
        publisher = OutboxPublisher(session_factory=get_session_factory())

        assert await publisher.process_batch() == 1


class TestRedisStreamPublisher:
    """Test suite for RedisStreamPublisher."""

    @pytest.mark.asyncio
    async def test_appends_to_capped_stream(self, mock_redis) -> None:
        stream = RedisStreamPublisher(redis_client=mock_redis)
        event = {
            "id": 7,
            "aggregate_id": "pay_1",
            "aggregate_type": "payment",
            "event_type": "payment.succeeded",
            "payload": {"amount_cents": 1000},
            "created_at": "2026-01-01T00:00:00+00:00",
        }

        await stream(event)

        args, kwargs = mock_redis.xadd.call_args
        assert args[0] == "native_payments:events"
        fields = args[1]
        assert fields["event_id"] == "7"
        assert fields["event_type"] == "payment.succeeded"
        assert json.loads(fields["data"])["payload"] == {"amount_cents": 1000}
        assert kwargs == {"maxlen": 100000, "approximate": True}

    @pytest.mark.asyncio
    async def test_close(self, mock_redis) -> None:
        stream = RedisStreamPublisher(redis_client=mock_redis)

        await stream.close()

        mock_redis.close.assert_called_once()


class TestSnapshotWorker:
    """Test suite for the nightly snapshot worker."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "now,expected",
        [
            (datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc), 1800.0),
            (datetime(2026, 3, 1, 1, 0, tzinfo=timezone.utc), 86400.0),
            (datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc), 7200.0),
        ],
    )
    def test_seconds_until_next_run(self, now: datetime, expected: float) -> None:
        assert seconds_until_next_run(1, now) == expected

    @pytest.mark.asyncio
    async def test_run_nightly_snapshots(self, test_db) -> None:
        written = await run_nightly_snapshots()

        # Six metrics for the default currency
        assert written == 6
