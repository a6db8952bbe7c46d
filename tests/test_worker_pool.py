"""Tests for the worker pool: acknowledging, returning and abandoning delivered batches."""

import asyncio
from collections.abc import Sequence

from conftest import pending_expense
from test_categorization_worker import RecordingClassifier

from categorizer.core.db import ExpenseStore
from categorizer.core.models import BatchReport, WorkItem
from categorizer.core.settings import Settings
from categorizer.services.queue import InMemoryWorkQueue, QueueMessage
from categorizer.workers.categorization_worker import expense_ids_of
from categorizer.workers.pool import WorkerPool, build_worker_pool


class ScriptedWorker:
    """Stands in for CategorizationWorker with a canned behaviour."""

    def __init__(self, retry: set[str] | None = None, error: Exception | None = None, delay: float = 0) -> None:
        """Initialize with message ids to retry, an error to raise, or a delay."""
        self.retry = retry or set()
        self.error = error
        self.delay = delay
        self.batches: list[list[str]] = []

    async def process_batch(self, messages: Sequence[QueueMessage]) -> BatchReport:
        """Return the scripted report."""
        self.batches.append([message.body for message in messages])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return BatchReport(retry_message_ids={m.message_id for m in messages if m.body in self.retry})


def _fill(queue: InMemoryWorkQueue, *bodies: str) -> None:
    for body in bodies:
        asyncio.run(queue.send(body))


def test_processed_messages_are_acked_and_retries_nacked(queue: InMemoryWorkQueue) -> None:
    """Messages the worker reports for retry come back; the rest are deleted."""
    _fill(queue, "a", "b", "c")
    pool = WorkerPool(queue, ScriptedWorker(retry={"b"}))

    report = asyncio.run(pool.run_once())

    if report is None:
        msg = "Expected a report"
        raise AssertionError(msg)
    if [message.body for message in asyncio.run(queue.receive())] != ["b"]:
        msg = "Expected only 'b' to be redelivered"
        raise AssertionError(msg)


def test_worker_exception_returns_whole_batch(queue: InMemoryWorkQueue) -> None:
    """An unexpected failure nacks every message of the batch."""
    _fill(queue, "a", "b")
    pool = WorkerPool(queue, ScriptedWorker(error=RuntimeError("boom")))

    if asyncio.run(pool.run_once()) is not None:
        msg = "Expected no report for a failed batch"
        raise AssertionError(msg)
    if len(asyncio.run(queue.receive())) != 2:
        msg = "Expected both messages to be redelivered"
        raise AssertionError(msg)


def test_timed_out_batch_is_left_leased(queue: InMemoryWorkQueue) -> None:
    """A batch past the timeout is neither acked nor nacked; the lease decides redelivery."""
    _fill(queue, "slow")
    pool = WorkerPool(queue, ScriptedWorker(delay=1), batch_timeout=0.01)

    if asyncio.run(pool.run_once()) is not None:
        msg = "Expected the batch to be abandoned"
        raise AssertionError(msg)
    if len(queue) != 1 or asyncio.run(queue.receive()):
        msg = "Expected the message to stay in the queue, still leased"
        raise AssertionError(msg)


def test_empty_queue_returns_none(queue: InMemoryWorkQueue) -> None:
    """Nothing delivered, nothing processed."""
    worker = ScriptedWorker()
    if asyncio.run(WorkerPool(queue, worker).run_once()) is not None or worker.batches:
        msg = "Expected no processing on an empty queue"
        raise AssertionError(msg)


def test_run_drains_queue_until_stopped(queue: InMemoryWorkQueue) -> None:
    """Handler loops keep receiving until the stop event is set."""
    _fill(queue, *(str(index) for index in range(25)))
    worker = ScriptedWorker()
    pool = WorkerPool(queue, worker, concurrency=3, receive_batch_size=10, idle_sleep=0.01)

    async def scenario() -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(pool.run(stop))
        for _ in range(200):
            if len(queue) == 0:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await task

    asyncio.run(scenario())

    processed = sorted(int(body) for batch in worker.batches for body in batch)
    if processed != list(range(25)) or len(queue) != 0:
        msg = f"Expected all 25 messages processed once, got {processed}"
        raise AssertionError(msg)
    if max(len(batch) for batch in worker.batches) > 10:
        msg = "Expected batches of at most 10 messages"
        raise AssertionError(msg)


def test_end_to_end_with_real_worker(store: ExpenseStore, queue: InMemoryWorkQueue) -> None:
    """A pool built from settings categorizes a queued expense and deletes its message."""
    expense = pending_expense()
    asyncio.run(store.put(expense))
    item = WorkItem(expense_id=expense.id, user_id=expense.user_id)
    asyncio.run(queue.send(item.model_dump_json(by_alias=True)))
    pool = build_worker_pool(Settings(worker_concurrency=1), store, queue, classifier=RecordingClassifier(store))

    report = asyncio.run(pool.run_once())

    if report.counts.successful != 1 or len(queue) != 0:
        msg = f"Expected one success and an empty queue, got {report}"
        raise AssertionError(msg)
    if asyncio.run(store.get(expense.id)).ai_category_suggestion != "Shopping":
        msg = "Expected the suggestion to be stored"
        raise AssertionError(msg)


def test_timed_out_batch_names_its_expenses() -> None:
    """The expense ids of an abandoned batch can be listed for the timeout log."""
    first = pending_expense(summary="b")
    second = pending_expense(summary="a")
    messages = [
        QueueMessage("m-1", WorkItem(expense_id=first.id, user_id="user-1").model_dump_json(by_alias=True), "r1"),
        QueueMessage("m-2", WorkItem(expense_id=second.id, user_id="user-1").model_dump_json(by_alias=True), "r2"),
        QueueMessage("m-3", WorkItem(expense_id=first.id, user_id="user-1").model_dump_json(by_alias=True), "r3"),
        QueueMessage("m-4", "{broken", "r4"),
    ]
    if expense_ids_of(messages) != sorted([first.id, second.id]):
        msg = f"Expected the two distinct expense ids, got {expense_ids_of(messages)}"
        raise AssertionError(msg)
