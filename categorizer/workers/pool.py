"""Worker pool: stateless handler loops pulling fixed-size batches from a work queue."""

import asyncio
import contextlib

from categorizer.agents.base import BaseClassifier
from categorizer.agents.category_agent import build_category_agent
from categorizer.core.db import ExpenseStore
from categorizer.core.models import BatchReport
from categorizer.core.settings import Settings
from categorizer.core.utils import get_logger
from categorizer.services.catalog import CategoryCatalogService
from categorizer.services.queue import QueueMessage, WorkQueue
from categorizer.workers.categorization_worker import CategorizationWorker, expense_ids_of

logger = get_logger("expense-categorizer.pool")


class WorkerPool:
    """Runs ``concurrency`` handler loops, each receiving a batch, processing it and acknowledging it."""

    def __init__(
        self,
        queue: WorkQueue,
        worker: CategorizationWorker,
        *,
        concurrency: int = 2,
        receive_batch_size: int = 10,
        batch_timeout: float = 300.0,
        idle_sleep: float = 1.0,
    ) -> None:
        """Initialize the pool around a queue and a categorization worker."""
        self.queue = queue
        self.worker = worker
        self.concurrency = max(1, concurrency)
        self.receive_batch_size = receive_batch_size
        self.batch_timeout = batch_timeout
        self.idle_sleep = idle_sleep

    async def run_once(self) -> BatchReport | None:
        """Receive and handle one batch. Returns ``None`` when nothing was delivered or the batch was abandoned."""
        messages = await self.queue.receive(self.receive_batch_size)
        if not messages:
            return None
        try:
            report = await asyncio.wait_for(self.worker.process_batch(messages), timeout=self.batch_timeout)
        except TimeoutError:
            logger.error(
                f"Batch of {len(messages)} messages exceeded {self.batch_timeout:.0f}s; "
                "leaving it for redelivery after the visibility timeout. Expenses already marked processing stay "
                f"processing and need re-ingestion: {expense_ids_of(messages)}"
            )
            return None
        except Exception:
            logger.exception(f"Batch of {len(messages)} messages failed; returning it to the queue")
            await self._settle(messages, retry_ids={message.message_id for message in messages})
            return None
        await self._settle(messages, retry_ids=report.retry_message_ids)
        return report

    async def _settle(self, messages: list[QueueMessage], retry_ids: set[str]) -> None:
        for message in messages:
            try:
                if message.message_id in retry_ids:
                    await self.queue.nack(message)
                else:
                    await self.queue.ack(message)
            except Exception:
                logger.exception(f"Could not settle message {message.message_id}; the queue will redeliver it")

    async def _handler_loop(self, index: int, stop_event: asyncio.Event) -> None:
        logger.info(f"Handler {index} started")
        while not stop_event.is_set():
            try:
                report = await self.run_once()
            except Exception:
                logger.exception(f"Handler {index} could not receive from the queue")
                report = None
            if report is None:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self.idle_sleep)
        logger.info(f"Handler {index} stopped")

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run the handler loops until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Worker pool starting with {self.concurrency} handlers")
        await asyncio.gather(*(self._handler_loop(index, stop_event) for index in range(1, self.concurrency + 1)))


def build_worker_pool(
    settings: Settings,
    store: ExpenseStore,
    queue: WorkQueue,
    classifier: BaseClassifier | None = None,
) -> WorkerPool:
    """Wire a worker pool from settings. Without an explicit classifier the Groq-backed agent is required."""
    worker = CategorizationWorker(
        store,
        classifier or build_category_agent(settings),
        CategoryCatalogService(store, sample_size=settings.category_sample_size),
        max_batch_size=settings.max_batch_size,
    )
    return WorkerPool(
        queue,
        worker,
        concurrency=settings.worker_concurrency,
        receive_batch_size=settings.receive_batch_size,
        batch_timeout=settings.batch_timeout,
    )
