import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.logging_config import get_logger, setup_logging
from app.routers import admin, webhook
from app.runtime import get_runtime

setup_logging(settings.log_level)

app = FastAPI(
    title="Instareply API",
    description="Instagram webhook automations: keyword and AI replies",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("event_worker")
_worker_task: asyncio.Task | None = None
_worker_stop: asyncio.Event | None = None


def _is_event_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.event_worker_enabled


@app.on_event("startup")
async def start_event_worker() -> None:
    global _worker_task, _worker_stop
    if not _is_event_worker_enabled():
        worker_logger.info("Event worker disabled")
        return
    if _worker_task is None or _worker_task.done():
        _worker_stop = asyncio.Event()
        _worker_task = asyncio.create_task(get_runtime().worker.run_forever(_worker_stop))


@app.on_event("shutdown")
async def stop_event_worker() -> None:
    global _worker_task, _worker_stop
    if _worker_task is None:
        return
    if _worker_stop is not None:
        _worker_stop.set()
    try:
        await asyncio.wait_for(_worker_task, timeout=settings.dispatch_timeout_seconds + 5)
    except asyncio.TimeoutError:
        _worker_task.cancel()
    except asyncio.CancelledError:
        pass
    _worker_task = None
    _worker_stop = None
    await get_runtime().close()


@app.get("/health")
async def health():
    return {"status": "ok"}
