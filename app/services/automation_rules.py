"""Automation rule types and the read-only rule store."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Account, Automation
from app.schemas.events import TriggerType
from app.services.errors import TransientIOError, UnknownAccountError

logger = get_logger("automation_rules")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ActionKind(str, Enum):
    TEMPLATE = "template"
    AI = "ai"


@dataclass(frozen=True)
class TemplateAction:
    text: str
    comment_reply: Optional[str] = None


@dataclass(frozen=True)
class AiAction:
    prompt: str
    fallback: str
    max_length: int = 800
    comment_reply: Optional[str] = None


ReplyAction = Union[TemplateAction, AiAction]


@dataclass(frozen=True)
class AutomationRule:
    id: str
    owner_id: str
    trigger_type: TriggerType
    keywords: tuple[str, ...]
    action: ReplyAction
    scoped_resource_ids: frozenset[str] = frozenset()
    active: bool = True
    dm_mode: str = "direct"
    updated_at: datetime = EPOCH

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind.AI if isinstance(self.action, AiAction) else ActionKind.TEMPLATE

    @property
    def configured_reply(self) -> str:
        """The reply text known before any generation happens."""
        if isinstance(self.action, AiAction):
            return self.action.fallback
        return self.action.text


class RuleStore(Protocol):
    def list_active_rules(self, account_id: str) -> list[AutomationRule]:
        ...

    def get_access_token(self, account_id: str) -> str:
        ...


def parse_string_list(value: Any) -> tuple[str, ...]:
    """Accept a list, a JSON-encoded list or a comma separated string."""
    if value is None:
        return ()
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return ()
        try:
            decoded = json.loads(stripped)
        except ValueError:
            decoded = stripped.split(",")
        value = decoded if isinstance(decoded, list) else [str(decoded)]
    items: list[str] = []
    seen: set[str] = set()
    for item in value:
        text = str(item).strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        items.append(text)
    return tuple(items)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rule_from_model(
    automation: Automation,
    *,
    default_ai_fallback: str,
    default_ai_max_length: int,
) -> Optional[AutomationRule]:
    try:
        trigger_type = TriggerType(automation.trigger_type)
    except ValueError:
        logger.warning(
            "Unsupported automation trigger type",
            extra={"context": {"automation_id": automation.id, "trigger_type": automation.trigger_type}},
        )
        return None

    action: ReplyAction
    if automation.action_type == ActionKind.AI.value:
        if not automation.ai_prompt:
            logger.warning("AI automation without prompt", extra={"context": {"automation_id": automation.id}})
            return None
        action = AiAction(
            prompt=automation.ai_prompt,
            fallback=automation.message or default_ai_fallback,
            max_length=automation.ai_max_length or default_ai_max_length,
            comment_reply=automation.comment_reply or None,
        )
    else:
        if not automation.message:
            logger.warning("Automation without message", extra={"context": {"automation_id": automation.id}})
            return None
        action = TemplateAction(text=automation.message, comment_reply=automation.comment_reply or None)

    return AutomationRule(
        id=str(automation.id),
        owner_id=str(automation.user_id),
        trigger_type=trigger_type,
        keywords=parse_string_list(automation.keywords),
        action=action,
        scoped_resource_ids=frozenset(parse_string_list(automation.posts)),
        active=bool(automation.active),
        dm_mode=automation.dm_mode or "direct",
        updated_at=_as_utc(automation.updated_at or automation.created_at),
    )


class SqlRuleStore:
    """RuleStore over the dashboard's accounts and automations tables."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        default_ai_fallback: str = "Thanks for reaching out!",
        default_ai_max_length: int = 800,
    ):
        self.session_factory = session_factory
        self.default_ai_fallback = default_ai_fallback
        self.default_ai_max_length = default_ai_max_length

    def _get_account(self, db: Session, account_id: str) -> Account:
        account = (
            db.query(Account)
            .filter(Account.provider == "instagram", Account.provider_account_id == account_id)
            .first()
        )
        if not account:
            raise UnknownAccountError(account_id)
        return account

    def list_active_rules(self, account_id: str) -> list[AutomationRule]:
        db = self.session_factory()
        try:
            account = self._get_account(db, account_id)
            rows = (
                db.query(Automation)
                .filter(Automation.user_id == account.user_id, Automation.active.is_(True))
                .all()
            )
            rules = []
            for row in rows:
                rule = rule_from_model(
                    row,
                    default_ai_fallback=self.default_ai_fallback,
                    default_ai_max_length=self.default_ai_max_length,
                )
                if rule:
                    rules.append(rule)
        except SQLAlchemyError as e:
            raise TransientIOError(f"rule_store_unavailable:{type(e).__name__}") from e
        finally:
            db.close()

        logger.debug(
            "Loaded automation rules",
            extra={"context": {"account_id": account_id, "rules": len(rules)}},
        )
        return rules

    def get_access_token(self, account_id: str) -> str:
        db = self.session_factory()
        try:
            account = self._get_account(db, account_id)
            token = account.access_token
        except SQLAlchemyError as e:
            raise TransientIOError(f"rule_store_unavailable:{type(e).__name__}") from e
        finally:
            db.close()
        if not token:
            raise UnknownAccountError(account_id)
        return token
