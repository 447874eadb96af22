"""Queue consumer: pops events, runs the pipeline and routes outcomes.

Terminal outcomes (sent, skipped-duplicate, skipped-no-match) are done.
Transient failures go back on the queue until the attempt budget is spent;
permanent failures and exhausted retries are parked on the failed list.
"""

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Optional

from app.logging_config import get_logger
from app.schemas.events import DispatchOutcome, DispatchResult, ErrorKind, InboundEvent, QueuedEvent, TriggerType
from app.services.alert_service import alert_failed_event
from app.services.automation_log_service import AutomationLogWriter
from app.services.automation_matcher import is_self_or_reply, select_rule
from app.services.automation_rules import AiAction, AutomationRule, RuleStore
from app.services.conversation_tracker import ConversationTracker
from app.services.dedup_ledger import DedupLedger
from app.services.dispatcher import Dispatcher
from app.services.errors import PermanentEventError, TransientIOError
from app.services.event_queue import EventQueue
from app.services.kv_store import Clock

logger = get_logger("worker")

FailedEventAlert = Callable[[InboundEvent, int, str], Awaitable[bool]]


def _failed(event: InboundEvent, error: str, kind: ErrorKind, rule_id: Optional[str] = None) -> DispatchResult:
    return DispatchResult(event=event, rule_id=rule_id, outcome=DispatchOutcome.FAILED, error=error, error_kind=kind)


class EventWorker:
    def __init__(
        self,
        queue: EventQueue,
        rule_store: RuleStore,
        tracker: ConversationTracker,
        dispatcher: Dispatcher,
        log_writer: Optional[AutomationLogWriter] = None,
        *,
        ledger: Optional[DedupLedger] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        pop_timeout_seconds: float = 1.0,
        ledger_sweep_interval_seconds: float = 120.0,
        session_sweep_interval_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        on_failed_event: Optional[FailedEventAlert] = alert_failed_event,
    ):
        self.queue = queue
        self.rule_store = rule_store
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.log_writer = log_writer
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.pop_timeout_seconds = pop_timeout_seconds
        self.ledger_sweep_interval_seconds = ledger_sweep_interval_seconds
        self.session_sweep_interval_seconds = session_sweep_interval_seconds
        self.clock = clock
        self.on_failed_event = on_failed_event
        self._last_ledger_sweep = clock()
        self._last_session_sweep = clock()
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(cls, settings, **components) -> "EventWorker":
        return cls(
            max_attempts=settings.worker_max_attempts,
            backoff_seconds=settings.worker_backoff_seconds,
            max_backoff_seconds=settings.worker_max_backoff_seconds,
            pop_timeout_seconds=settings.queue_pop_timeout_seconds,
            ledger_sweep_interval_seconds=settings.dedup_sweep_interval_seconds,
            session_sweep_interval_seconds=settings.conversation_sweep_interval_seconds,
            **components,
        )

    def backoff_for(self, attempt: int) -> float:
        """Exponential delay for the n-th consecutive failure (1-based)."""
        return min(self.backoff_seconds * (2 ** max(attempt - 1, 0)), self.max_backoff_seconds)

    async def _load_rules(self, event: InboundEvent) -> list[AutomationRule]:
        return await asyncio.to_thread(self.rule_store.list_active_rules, event.source_account_id)

    async def _continuation_rule(self, event: InboundEvent, rules: list[AutomationRule]) -> Optional[AutomationRule]:
        """The AI rule of an ongoing conversation this DM continues, if any."""
        if event.trigger_type != TriggerType.DM or is_self_or_reply(event):
            return None
        active, rule_id = await self.tracker.is_in_active_conversation(event.source_account_id, event.actor_id)
        if not active:
            return None
        for rule in rules:
            if rule.id == rule_id and rule.active and isinstance(rule.action, AiAction):
                return rule
        # The rule was deactivated or is no longer an AI rule.
        await self.tracker.end_conversation(event.source_account_id, event.actor_id, rule_id)
        return None

    async def process_event(self, event: InboundEvent) -> DispatchResult:
        """Run one event through matching and dispatch. Never raises."""
        try:
            rules = await self._load_rules(event)

            rule = await self._continuation_rule(event, rules)
            if rule is not None:
                logger.info(
                    "Continuing AI conversation",
                    extra={"context": {"request_id": event.request_id, "rule_id": rule.id}},
                )
                return await self.dispatcher.dispatch(event, rule, continuation=True)

            rule = select_rule(event, rules)
            if rule is None:
                logger.info(
                    "No automation matched",
                    extra={
                        "context": {
                            "request_id": event.request_id,
                            "trigger_id": event.trigger_id,
                            "trigger_type": event.trigger_type.value,
                            "rules": len(rules),
                        }
                    },
                )
                return DispatchResult(event=event, outcome=DispatchOutcome.SKIPPED_NO_MATCH)

            return await self.dispatcher.dispatch(event, rule)
        except PermanentEventError as e:
            return _failed(event, str(e), ErrorKind.PERMANENT)
        except TransientIOError as e:
            return _failed(event, str(e), ErrorKind.TRANSIENT)
        except Exception as e:
            logger.exception(
                "Unexpected error while processing event",
                extra={"context": {"request_id": event.request_id, "trigger_id": event.trigger_id}},
            )
            return _failed(event, f"unexpected:{type(e).__name__}: {e}", ErrorKind.TRANSIENT)

    async def handle(self, item: QueuedEvent) -> DispatchResult:
        result = await self.process_event(item.event)
        attempts = item.attempts + 1

        if self.log_writer is not None:
            await self.log_writer.record_result(result)

        if result.is_terminal:
            logger.info(
                "Event processed",
                extra={
                    "context": {
                        "request_id": item.event.request_id,
                        "trigger_id": item.event.trigger_id,
                        "outcome": result.outcome.value,
                        "rule_id": result.rule_id,
                        "attempts": attempts,
                    }
                },
            )
            return result

        error = result.error or "unknown_error"
        if result.error_kind == ErrorKind.TRANSIENT and attempts < self.max_attempts:
            delay = self.backoff_for(attempts)
            logger.warning(
                "Transient failure, requeueing event",
                extra={
                    "context": {
                        "request_id": item.event.request_id,
                        "attempts": attempts,
                        "max_attempts": self.max_attempts,
                        "retry_in_seconds": delay,
                        "error": error,
                    }
                },
            )
            if delay > 0:
                await self._pause(self._stop_event, delay)
            retry = item.model_copy(update={"attempts": attempts, "last_error": error})
            await self._store_until_accepted(retry, "requeue", lambda: self.queue.requeue(retry))
            return result

        failed = item.model_copy(update={"attempts": attempts})
        await self._store_until_accepted(failed, "move_to_failed", lambda: self.queue.move_to_failed(failed, error))
        if self.on_failed_event is not None:
            await self.on_failed_event(item.event, attempts, error)
        return result

    async def _store_until_accepted(
        self,
        item: QueuedEvent,
        operation: str,
        push: Callable[[], Awaitable[None]],
    ) -> bool:
        """Retry a queue write for a popped event until the store accepts it.

        Gives up only once the worker is stopping; the event JSON is then logged
        so it can be replayed by hand.
        """
        failures = 0
        while True:
            try:
                await push()
                return True
            except TransientIOError as e:
                failures += 1
                if self._stop_event.is_set():
                    logger.error(
                        "Dropping event after queue write failures",
                        extra={
                            "context": {
                                "operation": operation,
                                "failures": failures,
                                "error": str(e),
                                "event": item.model_dump_json(),
                            }
                        },
                    )
                    return False
                delay = self.backoff_for(failures)
                logger.warning(
                    "Queue write failed, retrying",
                    extra={
                        "context": {
                            "operation": operation,
                            "request_id": item.event.request_id,
                            "failures": failures,
                            "retry_in_seconds": delay,
                            "error": str(e),
                        }
                    },
                )
                await self._pause(self._stop_event, delay)

    async def run_once(self, timeout: Optional[float] = None) -> Optional[DispatchResult]:
        """Process at most one event. Queue backend errors propagate as TransientIOError."""
        item = await self.queue.dequeue(self.pop_timeout_seconds if timeout is None else timeout)
        if item is None:
            return None
        return await self.handle(item)

    async def sweep_if_due(self) -> None:
        now = self.clock()
        try:
            if self.ledger is not None and now - self._last_ledger_sweep >= self.ledger_sweep_interval_seconds:
                self._last_ledger_sweep = now
                await self.ledger.sweep()
            if now - self._last_session_sweep >= self.session_sweep_interval_seconds:
                self._last_session_sweep = now
                await self.tracker.sweep()
        except TransientIOError as e:
            logger.warning("Periodic sweep failed", extra={"context": {"error": str(e)}})

    async def _pause(self, stop_event: asyncio.Event, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if stop_event is not None:
            self._stop_event = stop_event
        stop_event = self._stop_event
        failures = 0
        logger.info("Event worker started", extra={"context": {"queue": self.queue.queue_key}})
        while not stop_event.is_set():
            await self.sweep_if_due()
            try:
                await self.run_once()
                failures = 0
            except TransientIOError as e:
                failures += 1
                delay = self.backoff_for(failures)
                logger.warning(
                    "Queue unavailable, backing off",
                    extra={"context": {"error": str(e), "failures": failures, "retry_in_seconds": delay}},
                )
                await self._pause(stop_event, delay)
            except Exception:
                failures += 1
                logger.exception("Unexpected worker loop error")
                await self._pause(stop_event, self.backoff_for(failures))
        logger.info("Event worker stopped")
