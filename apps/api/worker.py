"""Standalone worker process for the refund sweeper and reconciliation loops.

Run with `python worker.py` and set BACKGROUND_WORKERS_IN_API=false on the API
processes so the loops are not duplicated.
"""

import asyncio
import logging
import signal

from config import settings
from database import async_session_maker
from services.container import build_billing_services

logger = logging.getLogger("worker")


async def run_workers() -> None:
    services = build_billing_services(settings, async_session_maker)
    released = await services.failure_store.release_stale_processing(
        settings.CREDIT_REFUND_STALE_PROCESSING_SECONDS
    )
    if released:
        logger.info("Released %s stale refund claims on startup", released)

    started = services.start_workers(settings)
    if not started:
        logger.warning("All background workers are disabled; exiting")
        return
    logger.info("Workers running: %s", ", ".join(started))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await stop_event.wait()
    logger.info("Stopping workers")
    await services.stop_workers()


def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
