"""Turn raw Instagram webhook bodies into InboundEvent records."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.events import InboundEvent, TriggerType
from app.schemas.webhook import (
    InstagramCommentValue,
    InstagramEntry,
    InstagramFollowValue,
    InstagramMessagingEvent,
    InstagramWebhookPayload,
)
from app.services.errors import PermanentEventError

logger = get_logger("event_parser")

COMMENT_FIELDS = {"comments", "live_comments"}
FOLLOW_FIELDS = {"follows", "followers"}


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def build_trigger_id(
    trigger_id: str | None,
    actor_id: str | None,
    timestamp: int | None,
    text: str | None,
) -> str:
    """Stable id for a trigger, even when the platform omitted one."""
    if trigger_id:
        return trigger_id.strip()
    if actor_id and timestamp is not None:
        return f"{actor_id}:{timestamp}"
    if actor_id and text:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        return f"{actor_id}:{digest}"
    return str(uuid.uuid4())


def parse_webhook_events(
    body: dict[str, Any],
    *,
    request_id: str,
    received_at: Optional[datetime] = None,
) -> list[InboundEvent]:
    """Extract every actionable trigger from one webhook delivery.

    Raises PermanentEventError when the body is not a webhook payload at all.
    Non-Instagram objects and non-actionable changes yield no events.
    """
    try:
        payload = InstagramWebhookPayload.model_validate(body)
    except ValidationError as exc:
        raise PermanentEventError(f"invalid webhook payload: {exc.error_count()} errors") from exc

    if payload.object != "instagram":
        logger.info("Ignoring non-instagram webhook", extra={"context": {"object": payload.object}})
        return []

    received_at = received_at or datetime.now(timezone.utc)
    events: list[InboundEvent] = []
    for entry in payload.entry:
        for change in entry.changes:
            try:
                if change.field in COMMENT_FIELDS:
                    event = _parse_comment(entry, change.value or {}, request_id, received_at)
                elif change.field in FOLLOW_FIELDS:
                    event = _parse_follow(entry, change.value or {}, request_id, received_at)
                else:
                    event = None
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed change",
                    extra={"context": {"request_id": request_id, "field": change.field, "error": str(exc)}},
                )
                continue
            if event:
                events.append(event)

        for messaging in entry.messaging:
            event = _parse_message(entry, messaging, request_id, received_at)
            if event:
                events.append(event)

    return events


def _parse_comment(
    entry: InstagramEntry,
    value: dict[str, Any],
    request_id: str,
    received_at: datetime,
) -> Optional[InboundEvent]:
    comment = InstagramCommentValue.model_validate(value)
    if not comment.text:
        logger.info("Skipping non-text comment change", extra={"context": {"request_id": request_id}})
        return None
    actor = comment.from_user
    if not actor or not actor.id:
        logger.warning("Comment without author", extra={"context": {"request_id": request_id}})
        return None

    return InboundEvent(
        request_id=request_id,
        received_at=received_at,
        source_account_id=entry.id,
        trigger_type=TriggerType.COMMENT,
        trigger_id=build_trigger_id(comment.id, actor.id, entry.time, comment.text),
        trigger_text=comment.text,
        actor_id=actor.id,
        actor_username=actor.username,
        target_resource_id=(comment.media.id if comment.media and comment.media.id else comment.media_id),
        parent_id=comment.parent_id,
    )


def _parse_follow(
    entry: InstagramEntry,
    value: dict[str, Any],
    request_id: str,
    received_at: datetime,
) -> Optional[InboundEvent]:
    follow = InstagramFollowValue.model_validate(value)
    actor = follow.from_user
    if not actor or not actor.id:
        return None

    return InboundEvent(
        request_id=request_id,
        received_at=received_at,
        source_account_id=entry.id,
        trigger_type=TriggerType.FOLLOW,
        trigger_id=build_trigger_id(follow.id, actor.id, entry.time, None),
        actor_id=actor.id,
        actor_username=actor.username,
    )


def _parse_message(
    entry: InstagramEntry,
    messaging: InstagramMessagingEvent,
    request_id: str,
    received_at: datetime,
) -> Optional[InboundEvent]:
    message = messaging.message
    # Echoes are our own outbound messages reflected back.
    if not message or not message.text or message.is_echo:
        return None
    sender = messaging.sender
    if not sender or not sender.id:
        return None

    return InboundEvent(
        request_id=request_id,
        received_at=received_at,
        source_account_id=entry.id,
        trigger_type=TriggerType.DM,
        trigger_id=build_trigger_id(message.mid, sender.id, messaging.timestamp, message.text),
        trigger_text=message.text,
        actor_id=sender.id,
        actor_username=sender.username,
    )
