"""Short-lived conversation sessions for AI automations.

A session is keyed by (owner, actor, rule) and lives in the shared key-value
store. Ending a session removes it, so "absent" and "ended" read the same to
callers; the state machine still guards every transition.
"""

from __future__ import annotations

import time
from typing import Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.conversation import ConversationSession, ConversationTurn
from app.services import state_machine
from app.services.kv_store import Clock, KeyValueStore
from app.services.state_machine import SessionState

logger = get_logger("conversation_tracker")

SESSION_PREFIX = "session:"


def session_key(owner_id: str, actor_id: str, rule_id: str) -> str:
    return f"{SESSION_PREFIX}{owner_id}:{actor_id}:{rule_id}"


class ConversationTracker:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = time.time,
        *,
        inactivity_seconds: float = 1800,
        max_turns: int = 20,
        ttl_seconds: float = 86400,
    ):
        self.store = store
        self.clock = clock
        self.inactivity_seconds = inactivity_seconds
        self.max_turns = max_turns
        self.ttl_seconds = ttl_seconds

    async def _load(self, key: str) -> Optional[ConversationSession]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return ConversationSession.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping unreadable conversation session", extra={"context": {"key": key}})
            await self.store.delete(key)
            return None

    async def _save(self, session: ConversationSession) -> None:
        key = session_key(session.owner_id, session.actor_id, session.rule_id)
        await self.store.set(key, session.model_dump_json(), ttl_seconds=self.ttl_seconds)

    def _append(self, session: ConversationSession, role: str, text: str, now: float) -> None:
        session.turns.append(ConversationTurn(role=role, text=text, at=now))
        if len(session.turns) > self.max_turns:
            session.turns = session.turns[-self.max_turns :]
        session.last_activity_at = now

    async def get_session(self, owner_id: str, actor_id: str, rule_id: str) -> Optional[ConversationSession]:
        return await self._load(session_key(owner_id, actor_id, rule_id))

    async def start_conversation(
        self,
        owner_id: str,
        actor_id: str,
        rule_id: str,
        initial_message: Optional[str] = None,
    ) -> ConversationSession:
        """Open a session, or reuse the active one. Never creates a duplicate."""
        now = self.clock()
        session = await self.get_session(owner_id, actor_id, rule_id)
        current = session.state if session else SessionState.ABSENT
        if session is None or current == SessionState.ENDED:
            current = SessionState.ABSENT
            session = ConversationSession(
                owner_id=owner_id,
                actor_id=actor_id,
                rule_id=rule_id,
                started_at=now,
                last_activity_at=now,
            )
            logger.info(
                "Conversation started",
                extra={"context": {"owner_id": owner_id, "actor_id": actor_id, "rule_id": rule_id}},
            )
        session.state = state_machine.start(current)
        if initial_message:
            self._append(session, "user", initial_message, now)
        else:
            session.last_activity_at = now
        await self._save(session)
        return session

    async def add_message_to_conversation(
        self,
        owner_id: str,
        actor_id: str,
        rule_id: str,
        role: str,
        text: str,
    ) -> bool:
        """Append a turn. Returns False, without creating anything, when no session is active."""
        session = await self.get_session(owner_id, actor_id, rule_id)
        if session is None or session.state != SessionState.ACTIVE:
            logger.debug(
                "No active conversation to append to",
                extra={"context": {"owner_id": owner_id, "actor_id": actor_id, "rule_id": rule_id}},
            )
            return False
        session.state = state_machine.transition(session.state, SessionState.ACTIVE)
        self._append(session, role, text, self.clock())
        await self._save(session)
        return True

    async def end_conversation(self, owner_id: str, actor_id: str, rule_id: Optional[str] = None) -> int:
        """End one session, or every session of the pair when `rule_id` is None."""
        if rule_id is not None:
            keys = [session_key(owner_id, actor_id, rule_id)]
        else:
            keys = await self.store.scan(f"{SESSION_PREFIX}{owner_id}:{actor_id}:")

        ended = 0
        for key in keys:
            session = await self._load(key)
            if session is None:
                continue
            if state_machine.can_transition(session.state, SessionState.ENDED):
                session.state = state_machine.end(session.state)
                ended += 1
            await self.store.delete(key)
        if ended:
            logger.info(
                "Conversation ended",
                extra={"context": {"owner_id": owner_id, "actor_id": actor_id, "rule_id": rule_id, "ended": ended}},
            )
        return ended

    async def is_in_active_conversation(self, owner_id: str, actor_id: str) -> tuple[bool, Optional[str]]:
        """Return (active, rule_id) for the pair's most recently active session.

        Read only; idle sessions are ended by `sweep`.
        """
        latest: Optional[ConversationSession] = None
        for key in await self.store.scan(f"{SESSION_PREFIX}{owner_id}:{actor_id}:"):
            session = await self._load(key)
            if session is None or session.state != SessionState.ACTIVE:
                continue
            if latest is None or session.last_activity_at > latest.last_activity_at:
                latest = session
        if latest is None:
            return False, None
        return True, latest.rule_id

    async def get_context(
        self,
        owner_id: str,
        actor_id: str,
        rule_id: str,
        limit: int = 10,
    ) -> list[dict[str, str]]:
        """Most recent turns as chat messages, oldest first."""
        session = await self.get_session(owner_id, actor_id, rule_id)
        if session is None or limit <= 0:
            return []
        return [{"role": turn.role, "content": turn.text} for turn in session.turns[-limit:]]

    async def sweep(self) -> int:
        """End every session idle for longer than the inactivity threshold."""
        now = self.clock()
        ended = 0
        for key in await self.store.scan(SESSION_PREFIX):
            session = await self._load(key)
            if session is None:
                continue
            if now - session.last_activity_at > self.inactivity_seconds:
                ended += await self.end_conversation(session.owner_id, session.actor_id, session.rule_id)
        if ended:
            logger.info("Inactive conversations ended", extra={"context": {"ended": ended}})
        return ended
