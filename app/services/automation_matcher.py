"""Select the automation rule that answers an inbound trigger."""

from typing import Iterable, Optional

from app.logging_config import get_logger
from app.schemas.events import InboundEvent, TriggerType
from app.services.automation_rules import AutomationRule

logger = get_logger("automation_matcher")


def keyword_hits(rule: AutomationRule, text: str) -> list[str]:
    """Keywords of `rule` found in `text` (case-insensitive substring)."""
    haystack = (text or "").lower()
    return [keyword for keyword in rule.keywords if keyword.lower() in haystack]


def is_self_or_reply(event: InboundEvent) -> bool:
    """Replies to comments and the account's own actions never trigger automations."""
    if event.actor_id == event.source_account_id:
        return True
    return event.trigger_type == TriggerType.COMMENT and bool(event.parent_id)


def _in_scope(rule: AutomationRule, event: InboundEvent) -> bool:
    if not rule.scoped_resource_ids or not event.target_resource_id:
        return True
    return event.target_resource_id in rule.scoped_resource_ids


def _keywords_match(rule: AutomationRule, event: InboundEvent) -> bool:
    if not rule.keywords:
        return event.trigger_type == TriggerType.FOLLOW
    return bool(keyword_hits(rule, event.trigger_text))


def select_rule(event: InboundEvent, candidate_rules: Iterable[AutomationRule]) -> Optional[AutomationRule]:
    """Pick at most one rule for `event`.

    Filters, in order: active with the same trigger type, resource scope,
    keyword substring. Among the survivors the most recently updated rule wins;
    equal timestamps fall back to the higher rule id so repeated calls agree.
    """
    if is_self_or_reply(event):
        logger.debug(
            "Skipping reply or self-authored trigger",
            extra={"context": {"trigger_id": event.trigger_id, "parent_id": event.parent_id}},
        )
        return None

    candidates = [rule for rule in candidate_rules if rule.active and rule.trigger_type == event.trigger_type]
    candidates = [rule for rule in candidates if _in_scope(rule, event)]
    candidates = [rule for rule in candidates if _keywords_match(rule, event)]

    if not candidates:
        return None

    selected = max(candidates, key=lambda rule: (rule.updated_at, rule.id))
    logger.info(
        "Automation matched",
        extra={
            "context": {
                "trigger_id": event.trigger_id,
                "rule_id": selected.id,
                "candidates": len(candidates),
                "keywords": keyword_hits(selected, event.trigger_text),
            }
        },
    )
    return selected
