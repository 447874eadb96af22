#!/usr/bin/env python3
"""
Run the Instagram event worker as a standalone process.
Usage: python scripts/run_worker.py

Run exactly one worker per queue: the dedup ledger's check-then-mark is not
atomic across processes.
"""

import asyncio
import signal

from app.config import settings
from app.logging_config import get_logger, setup_logging
from app.runtime import build_runtime

logger = get_logger("run_worker")


async def main() -> None:
    runtime = build_runtime(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("Worker process starting", extra={"context": {"queue": settings.queue_key}})
    try:
        await runtime.worker.run_forever(stop_event)
    finally:
        await runtime.close()


if __name__ == "__main__":
    setup_logging(settings.log_level)
    asyncio.run(main())
