"""Operator endpoints for the dedup ledger and the event queues."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.services.errors import TransientIOError

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    expected = runtime.settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _unavailable(e: TransientIOError) -> HTTPException:
    logger.error("Admin operation failed", extra={"context": {"error": str(e)}})
    return HTTPException(status_code=503, detail="Store unavailable")


# === DEDUP LEDGER ===


@router.get("/dedup", dependencies=[Depends(require_admin_token)])
async def dedup_stats(runtime: Runtime = Depends(get_runtime)):
    try:
        return await runtime.ledger.stats()
    except TransientIOError as e:
        raise _unavailable(e)


@router.delete("/dedup", dependencies=[Depends(require_admin_token)])
async def clear_dedup(runtime: Runtime = Depends(get_runtime)):
    try:
        removed = await runtime.ledger.clear()
    except TransientIOError as e:
        raise _unavailable(e)
    return {"success": True, "removed": removed}


# === EVENT QUEUE ===


@router.get("/queue", dependencies=[Depends(require_admin_token)])
async def queue_status(
    preview: int = Query(default=3, ge=0, le=50),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        stats = await runtime.queue.stats()
        next_events = await runtime.queue.peek(preview)
    except TransientIOError as e:
        raise _unavailable(e)
    return {**stats, "next_events": next_events}


@router.delete("/queue", dependencies=[Depends(require_admin_token)])
async def clear_queue(
    include_failed: bool = False,
    runtime: Runtime = Depends(get_runtime),
):
    try:
        cleared = await runtime.queue.clear(include_failed=include_failed)
    except TransientIOError as e:
        raise _unavailable(e)
    return {"success": True, "cleared": cleared}


@router.post("/queue/replay-failed", dependencies=[Depends(require_admin_token)])
async def replay_failed(
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        result = await runtime.queue.replay_failed(limit)
    except TransientIOError as e:
        raise _unavailable(e)
    return {"success": True, **result}
