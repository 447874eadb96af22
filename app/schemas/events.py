from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    COMMENT = "comment"
    DM = "dm"
    FOLLOW = "follow"


class InboundEvent(BaseModel):
    """One real-world trigger observed through a webhook delivery."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    received_at: datetime = Field(default_factory=_utcnow)
    source_account_id: str
    trigger_type: TriggerType
    trigger_id: str
    trigger_text: str = ""
    actor_id: str
    actor_username: Optional[str] = None
    target_resource_id: Optional[str] = None
    parent_id: Optional[str] = None


class QueuedEvent(BaseModel):
    """Queue envelope; attempts counts completed processing attempts."""

    event: InboundEvent
    attempts: int = 0
    enqueued_at: datetime = Field(default_factory=_utcnow)
    last_error: Optional[str] = None


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED_DUPLICATE = "skipped-duplicate"
    SKIPPED_NO_MATCH = "skipped-no-match"
    FAILED = "failed"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class DispatchResult(BaseModel):
    event: InboundEvent
    rule_id: Optional[str] = None
    outcome: DispatchOutcome
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reply_text: Optional[str] = None
    provider_message_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome != DispatchOutcome.FAILED
