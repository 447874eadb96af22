"""Persist dispatch outcomes and automation-trigger analytics rows."""

import asyncio
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AutomationLog, DispatchRecord
from app.schemas.events import DispatchResult, InboundEvent

logger = get_logger("automation_log")


class AutomationLogWriter:
    """Best-effort writer: a database error is logged and never fails the caller."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _write(self, row) -> bool:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Failed to write automation log",
                extra={"context": {"table": row.__tablename__, "error": str(e)[:300]}},
            )
            return False
        finally:
            db.close()

    async def record_trigger(self, event: InboundEvent, rule_id: str, trigger_label: str) -> bool:
        row = AutomationLog(
            automation_id=rule_id,
            trigger_type=trigger_label,
            trigger_text=event.trigger_text or None,
            user_id=event.actor_id,
            username=event.actor_username,
        )
        return await asyncio.to_thread(self._write, row)

    async def record_result(self, result: DispatchResult) -> bool:
        event = result.event
        row = DispatchRecord(
            request_id=event.request_id,
            trigger_id=event.trigger_id,
            trigger_type=event.trigger_type.value,
            source_account_id=event.source_account_id,
            actor_id=event.actor_id,
            automation_id=result.rule_id,
            outcome=result.outcome.value,
            error=result.error,
            error_kind=result.error_kind.value if result.error_kind else None,
            provider_message_id=result.provider_message_id,
        )
        return await asyncio.to_thread(self._write, row)
