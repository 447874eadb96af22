import json
from unittest.mock import AsyncMock

import pytest

from app.schemas.events import QueuedEvent
from app.services.errors import TransientIOError
from app.services.event_queue import EventQueue


@pytest.fixture
def queue(store):
    return EventQueue(store, queue_key="events", failed_key="failed")


class TestFifo:
    @pytest.mark.asyncio
    async def test_enqueue_returns_request_id(self, queue, make_event):
        event = make_event()
        assert await queue.enqueue(event) == event.request_id

    @pytest.mark.asyncio
    async def test_dequeue_is_fifo(self, queue, make_event):
        first = make_event(trigger_id="c1")
        second = make_event(trigger_id="c2")
        await queue.enqueue(first)
        await queue.enqueue(second)

        assert (await queue.dequeue(0)).event == first
        assert (await queue.dequeue(0)).event == second
        assert await queue.dequeue(0) is None

    @pytest.mark.asyncio
    async def test_dequeue_waits_at_most_timeout(self, queue):
        assert await queue.dequeue(0.05) is None

    @pytest.mark.asyncio
    async def test_new_items_start_with_zero_attempts(self, queue, make_event):
        await queue.enqueue(make_event())
        item = await queue.dequeue(0)
        assert item.attempts == 0
        assert item.last_error is None

    @pytest.mark.asyncio
    async def test_requeue_keeps_attempts(self, queue, make_event):
        await queue.requeue(QueuedEvent(event=make_event(), attempts=2, last_error="http_500"))
        item = await queue.dequeue(0)
        assert item.attempts == 2
        assert item.last_error == "http_500"


class TestFailedList:
    @pytest.mark.asyncio
    async def test_undecodable_entry_moves_to_failed(self, queue, store):
        await store.lpush("events", "not json")

        assert await queue.dequeue(0) is None
        assert await store.llen("events") == 0
        record = json.loads((await store.lrange("failed", 0, -1))[0])
        assert record["raw"] == "not json"
        assert record["last_error"].startswith("invalid_event")

    @pytest.mark.asyncio
    async def test_move_to_failed_records_error(self, queue, store, make_event):
        item = QueuedEvent(event=make_event(), attempts=3)
        await queue.move_to_failed(item, "http_400")

        failed = QueuedEvent.model_validate_json((await store.lrange("failed", 0, -1))[0])
        assert failed.last_error == "http_400"
        assert failed.attempts == 3
        assert await store.llen("events") == 0

    @pytest.mark.asyncio
    async def test_replay_failed_resets_attempts(self, queue, store, make_event):
        await queue.move_to_failed(QueuedEvent(event=make_event(trigger_id="c1"), attempts=3), "boom")
        await queue.move_to_failed(QueuedEvent(event=make_event(trigger_id="c2"), attempts=1), "boom")

        result = await queue.replay_failed(limit=10)

        assert result == {"replayed": 2, "skipped": 0}
        assert await store.llen("failed") == 0
        first = await queue.dequeue(0)
        assert first.event.trigger_id == "c1"
        assert first.attempts == 0
        assert first.last_error is None

    @pytest.mark.asyncio
    async def test_replay_respects_limit(self, queue, store, make_event):
        for trigger_id in ("c1", "c2", "c3"):
            await queue.move_to_failed(QueuedEvent(event=make_event(trigger_id=trigger_id)), "boom")

        result = await queue.replay_failed(limit=2)

        assert result["replayed"] == 2
        assert await store.llen("failed") == 1

    @pytest.mark.asyncio
    async def test_replay_keeps_undecodable_records(self, queue, store):
        await store.lpush("failed", json.dumps({"raw": "garbage", "last_error": "x"}))

        result = await queue.replay_failed()

        assert result == {"replayed": 0, "skipped": 1}
        assert await store.llen("failed") == 1


class TestOperations:
    @pytest.mark.asyncio
    async def test_stats_and_peek(self, queue, make_event):
        await queue.enqueue(make_event(trigger_id="c1"))
        await queue.enqueue(make_event(trigger_id="c2"))

        assert await queue.stats() == {"queue_length": 2, "failed_length": 0}
        preview = await queue.peek(5)
        assert [p["trigger_id"] for p in preview] == ["c1", "c2"]
        assert await queue.stats() == {"queue_length": 2, "failed_length": 0}

    @pytest.mark.asyncio
    async def test_clear_keeps_failed_by_default(self, queue, store, make_event):
        await queue.enqueue(make_event())
        await queue.move_to_failed(QueuedEvent(event=make_event()), "boom")

        assert await queue.clear() == {"queue": 1, "failed": 0}
        assert await store.llen("failed") == 1

        assert await queue.clear(include_failed=True) == {"queue": 0, "failed": 1}
        assert await store.llen("failed") == 0

    @pytest.mark.asyncio
    async def test_backend_error_propagates(self, make_event):
        store = AsyncMock()
        store.brpop.side_effect = TransientIOError("redis brpop failed")
        queue = EventQueue(store)

        with pytest.raises(TransientIOError):
            await queue.dequeue(1)
