"""Instagram webhook ingestion.

Only signature validation, parsing and enqueueing happen inline; everything
else runs in the worker so the platform gets its 200 quickly.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.schemas.webhook import WebhookAcceptedResponse
from app.services.errors import PermanentEventError, TransientIOError
from app.services.event_parser import new_request_id, parse_webhook_events
from app.services.signature_service import validate_signature

logger = get_logger("webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/instagram", response_class=PlainTextResponse)
async def verify_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    runtime: Runtime = Depends(get_runtime),
):
    expected = runtime.settings.instagram_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        logger.info("Webhook subscription verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/instagram", response_model=WebhookAcceptedResponse)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
    runtime: Runtime = Depends(get_runtime),
):
    raw_body = await request.body()
    request_id = new_request_id()

    if not validate_signature(raw_body, x_hub_signature_256, runtime.settings.instagram_app_secret):
        logger.warning(
            "Rejected webhook with invalid signature",
            extra={"context": {"request_id": request_id, "has_header": bool(x_hub_signature_256)}},
        )
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        events = parse_webhook_events(body, request_id=request_id)
    except PermanentEventError as e:
        logger.warning("Unparseable webhook payload", extra={"context": {"request_id": request_id, "error": str(e)}})
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    try:
        for event in events:
            await runtime.queue.enqueue(event)
    except TransientIOError as e:
        # Non-2xx makes the platform redeliver.
        logger.error("Failed to enqueue webhook events", extra={"context": {"request_id": request_id, "error": str(e)}})
        raise HTTPException(status_code=503, detail="Queue unavailable")

    logger.info(
        "Webhook accepted",
        extra={"context": {"request_id": request_id, "events": len(events)}},
    )
    return WebhookAcceptedResponse(
        success=True,
        requestId=request_id,
        queuedForProcessing=bool(events),
        eventCount=len(events),
    )
