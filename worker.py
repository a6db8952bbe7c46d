"""Standalone categorization worker process.

Pulls work items from the configured queue and categorizes them until SIGINT or SIGTERM. Use ``QUEUE_BACKEND=sqs``
when running the worker apart from the API; the in-memory queue is not shared between processes.
"""

import asyncio
import signal
import sys

from categorizer.core.db import ExpenseStore
from categorizer.core.errors import ConfigurationError
from categorizer.core.settings import get_settings
from categorizer.core.utils import setup_logging
from categorizer.services.queue import build_work_queue
from categorizer.workers.pool import build_worker_pool

settings = get_settings()
logger = setup_logging(settings.log_file)


async def run() -> None:
    """Run the worker pool until a shutdown signal arrives."""
    store = ExpenseStore.from_url(settings.database_url)
    store.create_tables()
    queue = build_work_queue(settings)
    pool = build_worker_pool(settings, store, queue)
    if settings.queue_backend == "memory":
        logger.warning("Worker is using the in-memory queue; it only sees items enqueued by this process")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _request_stop, signum, stop_event)

    logger.info(f"Worker starting, backend={settings.queue_backend}, concurrency={settings.worker_concurrency}")
    await pool.run(stop_event)
    logger.info("Worker stopped")


def _request_stop(signum: int, stop_event: asyncio.Event) -> None:
    logger.info(f"Received signal {signum}, shutting down worker gracefully...")
    stop_event.set()


def main() -> None:
    """Entry point for ``python worker.py``."""
    try:
        asyncio.run(run())
    except ConfigurationError as exc:
        logger.critical(f"Worker cannot start: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
