"""Operator alerts sent to a Telegram chat."""

import asyncio
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.schemas.events import InboundEvent

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_dedup_disabled() -> bool:
    return alert_warning(
        "Dedup ledger is DISABLED. Duplicate Instagram replies will not be suppressed.",
        {"setting": "DEDUP_DISABLED=true"},
    )


async def alert_failed_event(event: InboundEvent, attempts: int, error: str) -> bool:
    """Report an event parked on the failed list; runs the HTTP call off the event loop."""
    context = {
        "request_id": event.request_id,
        "trigger_id": event.trigger_id,
        "trigger_type": event.trigger_type.value,
        "account_id": event.source_account_id,
        "attempts": attempts,
        "error": error[:200],
    }
    return await asyncio.to_thread(send_alert, "ERROR", "Instagram event moved to failed list", context)
