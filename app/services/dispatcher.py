"""Render and send one automation reply.

Order of side effects per dispatch: dedup gate, render, send, and only after a
confirmed send the ledger mark, session append and analytics row. A failed
send leaves the ledger untouched so a retry of the same event can succeed.
"""

import asyncio
from typing import Optional

from app.logging_config import EventLoggerAdapter, get_logger
from app.schemas.events import DispatchOutcome, DispatchResult, ErrorKind, InboundEvent, TriggerType
from app.services.automation_log_service import AutomationLogWriter
from app.services.automation_rules import AiAction, AutomationRule, RuleStore
from app.services.conversation_tracker import ConversationTracker
from app.services.dedup_ledger import DedupLedger, build_dedup_keys
from app.services.errors import PermanentEventError, TransientIOError
from app.services.messenger import Messenger
from app.services.reply_generator import ReplyGenerator, truncate_reply
from app.services.result import Result

logger = get_logger("dispatcher")

USERNAME_PLACEHOLDER = "{username}"


def render_template(text: str, event: InboundEvent) -> str:
    return text.replace(USERNAME_PLACEHOLDER, event.actor_username or "")


def _failed(event: InboundEvent, rule: AutomationRule, error: str, kind: ErrorKind) -> DispatchResult:
    return DispatchResult(
        event=event,
        rule_id=rule.id,
        outcome=DispatchOutcome.FAILED,
        error=error,
        error_kind=kind,
    )


class Dispatcher:
    def __init__(
        self,
        ledger: DedupLedger,
        tracker: ConversationTracker,
        generator: ReplyGenerator,
        messenger: Messenger,
        rule_store: RuleStore,
        log_writer: Optional[AutomationLogWriter] = None,
        *,
        reply_max_length: int = 800,
        ai_context_turns: int = 10,
        dispatch_timeout_seconds: float = 25.0,
    ):
        self.ledger = ledger
        self.tracker = tracker
        self.generator = generator
        self.messenger = messenger
        self.rule_store = rule_store
        self.log_writer = log_writer
        self.reply_max_length = reply_max_length
        self.ai_context_turns = ai_context_turns
        self.dispatch_timeout_seconds = dispatch_timeout_seconds

    async def dispatch(
        self,
        event: InboundEvent,
        rule: AutomationRule,
        *,
        continuation: bool = False,
    ) -> DispatchResult:
        log = EventLoggerAdapter(
            logger,
            {"request_id": event.request_id, "trigger_id": event.trigger_id, "rule_id": rule.id},
        )
        keys = build_dedup_keys(
            event,
            rule,
            reply_text=render_template(rule.configured_reply, event),
            continuation=continuation,
        )

        try:
            if not await self.ledger.may_proceed(keys):
                log.info("Duplicate trigger suppressed")
                return DispatchResult(event=event, rule_id=rule.id, outcome=DispatchOutcome.SKIPPED_DUPLICATE)
        except TransientIOError as e:
            return _failed(event, rule, f"ledger_unavailable:{e}", ErrorKind.TRANSIENT)

        progress = {"send_started": False}
        try:
            text, sent, access_token = await asyncio.wait_for(
                self._render_and_send(event, rule, progress),
                timeout=self.dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            if progress["send_started"]:
                return await self._unconfirmed_send(event, rule, keys, log)
            log.warning("Dispatch timed out", context={"timeout_seconds": self.dispatch_timeout_seconds})
            return _failed(event, rule, "dispatch_timeout", ErrorKind.TRANSIENT)
        except PermanentEventError as e:
            return _failed(event, rule, str(e), ErrorKind.PERMANENT)
        except TransientIOError as e:
            return _failed(event, rule, str(e), ErrorKind.TRANSIENT)

        if not sent.ok:
            kind = ErrorKind.TRANSIENT if sent.is_transient else ErrorKind.PERMANENT
            log.warning("Reply send failed", context={"error": sent.error, "error_kind": kind.value})
            return _failed(event, rule, sent.error or "send_failed", kind)

        await self._after_send(event, rule, text, keys, continuation, access_token, log)
        log.info("Reply sent", context={"provider_message_id": sent.value, "length": len(text)})
        return DispatchResult(
            event=event,
            rule_id=rule.id,
            outcome=DispatchOutcome.SENT,
            reply_text=text,
            provider_message_id=sent.value,
        )

    async def _unconfirmed_send(
        self,
        event: InboundEvent,
        rule: AutomationRule,
        keys: set[str],
        log: EventLoggerAdapter,
    ) -> DispatchResult:
        """The send was in flight when the timeout hit and may have been delivered.

        Marks the keys and fails permanently so the event is never sent again.
        """
        log.error(
            "Dispatch timed out during send, delivery unknown",
            context={"timeout_seconds": self.dispatch_timeout_seconds},
        )
        try:
            await self.ledger.mark_done(keys)
        except TransientIOError as e:
            log.error("Failed to mark dedup keys after unconfirmed send", context={"error": str(e)})
        return _failed(event, rule, "send_timeout_unconfirmed", ErrorKind.PERMANENT)

    async def _render_and_send(
        self,
        event: InboundEvent,
        rule: AutomationRule,
        progress: dict[str, bool],
    ) -> tuple[str, Result[str], str]:
        access_token = await asyncio.to_thread(self.rule_store.get_access_token, event.source_account_id)

        if isinstance(rule.action, AiAction):
            text = await self._generate(event, rule, rule.action)
        else:
            text = render_template(rule.action.text, event)
        text = truncate_reply(text, self.reply_max_length)

        comment_id = event.trigger_id if event.trigger_type == TriggerType.COMMENT else None
        progress["send_started"] = True
        sent = await self.messenger.send(
            event.source_account_id,
            event.actor_id,
            text,
            access_token=access_token,
            comment_id=comment_id,
        )
        return text, sent, access_token

    async def _generate(self, event: InboundEvent, rule: AutomationRule, action: AiAction) -> str:
        owner_id = event.source_account_id
        session = await self.tracker.get_session(owner_id, event.actor_id, rule.id)
        if session is None:
            await self.tracker.start_conversation(owner_id, event.actor_id, rule.id)
        context = await self.tracker.get_context(owner_id, event.actor_id, rule.id, self.ai_context_turns)
        return await self.generator.generate(
            action.prompt,
            action.fallback,
            action.max_length,
            context=context,
            user_message=event.trigger_text or None,
        )

    async def _after_send(
        self,
        event: InboundEvent,
        rule: AutomationRule,
        text: str,
        keys: set[str],
        continuation: bool,
        access_token: str,
        log: EventLoggerAdapter,
    ) -> None:
        # Reply already delivered: failures below are logged, never retried.
        try:
            await self.ledger.mark_done(keys)
        except TransientIOError as e:
            log.error("Failed to mark dedup keys after send", context={"error": str(e)})

        if isinstance(rule.action, AiAction):
            owner_id = event.source_account_id
            try:
                if event.trigger_text:
                    await self.tracker.add_message_to_conversation(
                        owner_id, event.actor_id, rule.id, "user", event.trigger_text
                    )
                await self.tracker.add_message_to_conversation(owner_id, event.actor_id, rule.id, "assistant", text)
            except TransientIOError as e:
                log.error("Failed to append conversation turn", context={"error": str(e)})

        if event.trigger_type == TriggerType.COMMENT and rule.action.comment_reply:
            await self._reply_publicly(event, rule, access_token, log)

        if self.log_writer is not None:
            label = "dm_conversation" if continuation else event.trigger_type.value
            await self.log_writer.record_trigger(event, rule.id, label)

    async def _reply_publicly(
        self,
        event: InboundEvent,
        rule: AutomationRule,
        access_token: str,
        log: EventLoggerAdapter,
    ) -> None:
        result = await self.messenger.reply_to_comment(
            event.trigger_id,
            render_template(rule.action.comment_reply, event),
            access_token=access_token,
        )
        if not result.ok:
            log.warning("Public comment reply failed", context={"error": result.error})
