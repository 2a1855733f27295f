"""
Standalone preflight worker.

    python -m prepress.worker

Polls the job table, processes claimed jobs and sweeps expired ones until
SIGINT/SIGTERM. Any number of workers may run against the same database.
"""
import asyncio
import logging
import signal

from prepress.core.config import settings
from prepress.db import close_async_db, init_async_db, init_db
from prepress.services.worker_runtime import WorkerRuntime

logger = logging.getLogger(__name__)


async def run_worker():
    init_db()
    await init_async_db()

    runtime = WorkerRuntime.from_settings(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    runtime.start()
    logger.info(
        f"Prepress worker running (poll {settings.POLL_INTERVAL_MS}ms, "
        f"concurrency {settings.WORKER_CONCURRENCY}, storage {settings.STORAGE_TYPE})"
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down prepress worker...")
        await runtime.stop()
        await close_async_db()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
