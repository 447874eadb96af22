from typing import Literal

from pydantic import BaseModel, Field

from app.services.state_machine import SessionState


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    text: str
    at: float


class ConversationSession(BaseModel):
    """Multi-turn AI chat between an account and one counterpart, for one rule."""

    owner_id: str
    actor_id: str
    rule_id: str
    state: SessionState = SessionState.ACTIVE
    turns: list[ConversationTurn] = Field(default_factory=list)
    started_at: float
    last_activity_at: float
