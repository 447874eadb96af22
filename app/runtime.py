"""Per-process wiring of the event pipeline.

The webhook routes, admin routes and the worker all share one Runtime.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import Settings, settings
from app.logging_config import get_logger
from app.services.alert_service import alert_dedup_disabled
from app.services.automation_log_service import AutomationLogWriter
from app.services.automation_rules import RuleStore, SqlRuleStore
from app.services.conversation_tracker import ConversationTracker
from app.services.dedup_ledger import DedupLedger, LedgerConfig
from app.services.dispatcher import Dispatcher
from app.services.event_queue import EventQueue
from app.services.kv_store import Clock, KeyValueStore, RedisStore
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.messenger import InstagramMessenger, Messenger
from app.services.reply_generator import ReplyGenerator
from app.services.worker import EventWorker

logger = get_logger("runtime")


@dataclass
class Runtime:
    settings: Settings
    store: KeyValueStore
    queue: EventQueue
    ledger: DedupLedger
    tracker: ConversationTracker
    rule_store: RuleStore
    dispatcher: Dispatcher
    worker: EventWorker

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


def build_runtime(
    config: Settings = settings,
    *,
    store: Optional[KeyValueStore] = None,
    rule_store: Optional[RuleStore] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    llm_provider: Optional[LLMProvider] = None,
    messenger: Optional[Messenger] = None,
    clock: Clock = time.time,
) -> Runtime:
    if store is None:
        store = RedisStore.from_url(config.redis_url, config.redis_socket_timeout_seconds)
    if session_factory is None:
        from app.database import SessionLocal

        session_factory = SessionLocal
    if rule_store is None:
        rule_store = SqlRuleStore(
            session_factory,
            default_ai_fallback=config.default_ai_fallback,
            default_ai_max_length=config.ai_max_length,
        )
    if llm_provider is None and config.openai_api_key:
        llm_provider = OpenAIProvider(api_key=config.openai_api_key, default_model=config.openai_model)
    if messenger is None:
        messenger = InstagramMessenger(config.instagram_graph_url, config.send_timeout_seconds)

    queue = EventQueue(store, queue_key=config.queue_key, failed_key=config.failed_queue_key)
    ledger = DedupLedger(store, LedgerConfig.from_settings(config), clock=clock)
    if ledger.config.disabled:
        alert_dedup_disabled()
    tracker = ConversationTracker(
        store,
        clock,
        inactivity_seconds=config.conversation_inactivity_seconds,
        max_turns=config.conversation_max_turns,
        ttl_seconds=config.conversation_ttl_seconds,
    )
    generator = ReplyGenerator(
        llm_provider,
        model=config.openai_model,
        timeout_seconds=config.generation_timeout_seconds,
    )
    log_writer = AutomationLogWriter(session_factory)
    dispatcher = Dispatcher(
        ledger,
        tracker,
        generator,
        messenger,
        rule_store,
        log_writer,
        reply_max_length=config.reply_max_length,
        ai_context_turns=config.ai_context_turns,
        dispatch_timeout_seconds=config.dispatch_timeout_seconds,
    )
    worker = EventWorker.from_settings(
        config,
        queue=queue,
        rule_store=rule_store,
        tracker=tracker,
        dispatcher=dispatcher,
        log_writer=log_writer,
        ledger=ledger,
    )
    logger.info(
        "Runtime built",
        extra={
            "context": {
                "store": type(store).__name__,
                "llm_configured": llm_provider is not None,
                "dedup_disabled": ledger.config.disabled,
            }
        },
    )
    return Runtime(
        settings=config,
        store=store,
        queue=queue,
        ledger=ledger,
        tracker=tracker,
        rule_store=rule_store,
        dispatcher=dispatcher,
        worker=worker,
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """FastAPI dependency; builds the runtime on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime
