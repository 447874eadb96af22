"""Durable FIFO of inbound events plus the failed-events side list.

Producers LPUSH and the worker BRPOPs, so the oldest event is served first.
Failed events are kept for manual replay and are never retried automatically.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.events import InboundEvent, QueuedEvent
from app.services.kv_store import KeyValueStore

logger = get_logger("event_queue")


class EventQueue:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        queue_key: str = "instagram_events",
        failed_key: str = "failed_events",
    ):
        self.store = store
        self.queue_key = queue_key
        self.failed_key = failed_key

    async def enqueue(self, event: InboundEvent) -> str:
        item = QueuedEvent(event=event)
        size = await self.store.lpush(self.queue_key, item.model_dump_json())
        logger.info(
            "Event queued",
            extra={
                "context": {
                    "request_id": event.request_id,
                    "trigger_id": event.trigger_id,
                    "trigger_type": event.trigger_type.value,
                    "queue_size": size,
                }
            },
        )
        return event.request_id

    async def requeue(self, item: QueuedEvent) -> None:
        await self.store.lpush(self.queue_key, item.model_dump_json())

    async def dequeue(self, timeout: float) -> Optional[QueuedEvent]:
        """Pop the oldest event, waiting up to `timeout` seconds.

        Raises TransientIOError when the backend is unreachable. Entries that
        cannot be decoded go straight to the failed list.
        """
        raw = await self.store.brpop(self.queue_key, timeout)
        if raw is None:
            return None
        try:
            return QueuedEvent.model_validate_json(raw)
        except ValidationError as exc:
            logger.error(
                "Discarding undecodable queue entry",
                extra={"context": {"error": str(exc)[:300]}},
            )
            await self._push_failed_raw(raw, f"invalid_event:{exc.error_count()} errors")
            return None

    async def move_to_failed(self, item: QueuedEvent, error: str) -> None:
        failed = item.model_copy(update={"last_error": error[:500]})
        await self.store.lpush(self.failed_key, failed.model_dump_json())
        logger.warning(
            "Event moved to failed list",
            extra={
                "context": {
                    "request_id": item.event.request_id,
                    "trigger_id": item.event.trigger_id,
                    "attempts": item.attempts,
                    "error": error[:500],
                }
            },
        )

    async def _push_failed_raw(self, raw: str, error: str) -> None:
        record = {
            "raw": raw,
            "last_error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.store.lpush(self.failed_key, json.dumps(record, ensure_ascii=False))

    async def stats(self) -> dict[str, int]:
        return {
            "queue_length": await self.store.llen(self.queue_key),
            "failed_length": await self.store.llen(self.failed_key),
        }

    async def peek(self, limit: int = 3) -> list[dict[str, Any]]:
        """Preview the next events to be served without removing them."""
        if limit <= 0:
            return []
        raw_items = await self.store.lrange(self.queue_key, -limit, -1)
        preview: list[dict[str, Any]] = []
        for raw in reversed(raw_items):
            try:
                item = QueuedEvent.model_validate_json(raw)
            except ValidationError:
                preview.append({"error": "Invalid event data"})
                continue
            preview.append(
                {
                    "request_id": item.event.request_id,
                    "trigger_id": item.event.trigger_id,
                    "trigger_type": item.event.trigger_type.value,
                    "received_at": item.event.received_at.isoformat(),
                    "attempts": item.attempts,
                }
            )
        return preview

    async def clear(self, *, include_failed: bool = False) -> dict[str, int]:
        cleared = {"queue": await self.store.llen(self.queue_key), "failed": 0}
        await self.store.delete(self.queue_key)
        if include_failed:
            cleared["failed"] = await self.store.llen(self.failed_key)
            await self.store.delete(self.failed_key)
        logger.warning("Event queues cleared", extra={"context": cleared})
        return cleared

    async def replay_failed(self, limit: int = 100) -> dict[str, int]:
        """Move failed events back onto the primary queue with a fresh attempt count.

        Undecodable records stay on the failed list for inspection.
        """
        replayed = 0
        undecodable: list[str] = []
        for _ in range(max(limit, 0)):
            raw = await self.store.brpop(self.failed_key, 0)
            if raw is None:
                break
            try:
                item = QueuedEvent.model_validate_json(raw)
            except ValidationError:
                undecodable.append(raw)
                continue
            await self.requeue(item.model_copy(update={"attempts": 0, "last_error": None}))
            replayed += 1
        for raw in undecodable:
            await self.store.lpush(self.failed_key, raw)
        result = {"replayed": replayed, "skipped": len(undecodable)}
        logger.info("Failed events replayed", extra={"context": result})
        return result
