"""Categorization worker: turns a delivered batch of work items into AI category suggestions.

Work items only name an expense; the worker re-reads each expense before acting and uses its stored status as the only
coordination. The ``pending -> processing`` check-then-set is two separate operations, so two invocations holding the
same work item can both classify the expense. Results are plain overwrites.
"""

import asyncio
from collections.abc import Sequence

from pydantic import ValidationError as PydanticValidationError

from categorizer.agents.base import BaseClassifier
from categorizer.core.db import ExpenseStore
from categorizer.core.models import (
    AICategorizationStatus,
    BatchCounts,
    BatchReport,
    ClassificationOutcome,
    Expense,
    WorkItem,
)
from categorizer.core.settings import MAX_BATCH_SIZE
from categorizer.core.utils import chunked, get_logger, truncate, utcnow
from categorizer.services.catalog import CategoryCatalogService
from categorizer.services.queue import QueueMessage

logger = get_logger("expense-categorizer.worker")

# user id -> expense id -> ids of the messages that asked for it
Grouped = dict[str, dict[str, list[str]]]


def group_messages(messages: Sequence[QueueMessage]) -> tuple[Grouped, int]:
    """Parse work items and group them by user. Returns the groups and the number of malformed messages."""
    grouped: Grouped = {}
    malformed = 0
    for message in messages:
        try:
            item = WorkItem.model_validate_json(message.body)
        except PydanticValidationError as exc:
            malformed += 1
            logger.warning(
                f"Dropping malformed work item {message.message_id}: {truncate(message.body, 200)} "
                f"({exc.error_count()} errors)"
            )
            continue
        grouped.setdefault(item.user_id, {}).setdefault(item.expense_id, []).append(message.message_id)
    return grouped, malformed


def expense_ids_of(messages: Sequence[QueueMessage]) -> list[str]:
    """Distinct expense ids named by the well-formed messages of a batch, sorted."""
    grouped, _ = group_messages(messages)
    return sorted({expense_id for expenses in grouped.values() for expense_id in expenses})


class CategorizationWorker:
    """Processes delivered work items in per-user chunks of at most ``MAX_BATCH_SIZE`` expenses."""

    def __init__(
        self,
        store: ExpenseStore,
        classifier: BaseClassifier,
        catalog: CategoryCatalogService,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        """Initialize the worker with its store, classifier and catalog service."""
        self.store = store
        self.classifier = classifier
        self.catalog = catalog
        self.max_batch_size = min(max_batch_size, MAX_BATCH_SIZE)

    async def process_batch(self, messages: Sequence[QueueMessage]) -> BatchReport:
        """Process one delivered batch. Item and chunk failures are recorded, never raised."""
        logger.info(f"Categorization batch received: {len(messages)} messages")
        grouped, malformed = group_messages(messages)
        report = BatchReport(malformed=malformed)

        user_ids = list(grouped)
        results = await asyncio.gather(
            *(self.process_user(user_id, grouped[user_id]) for user_id in user_ids),
            return_exceptions=True,
        )
        for user_id, result in zip(user_ids, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Unexpected error processing user {user_id}: {result!r}")
                report.failed_chunks += 1
                report.retry_message_ids.update(mid for mids in grouped[user_id].values() for mid in mids)
                continue
            report.counts += result.counts
            report.chunks += result.chunks
            report.failed_chunks += result.failed_chunks
            report.retry_message_ids |= result.retry_message_ids

        counts = report.counts
        logger.info(
            f"Categorization batch completed: {counts.total_processed} processed, {counts.eligible} eligible, "
            f"{counts.successful} successful, {counts.failed} failed, {counts.skipped} skipped, "
            f"{report.malformed} malformed, {len(report.retry_message_ids)} to retry"
        )
        return report

    async def process_user(self, user_id: str, expense_messages: dict[str, list[str]]) -> BatchReport:
        """Process one user's expenses chunk by chunk, in order."""
        report = BatchReport()
        expense_ids = list(expense_messages)
        total_chunks = -(-len(expense_ids) // self.max_batch_size)
        for index, chunk in enumerate(chunked(expense_ids, self.max_batch_size), start=1):
            report.chunks += 1
            try:
                expenses = await self.store.batch_get(chunk)
            except Exception:
                logger.exception(f"[{user_id} {index}/{total_chunks}] Could not read chunk; returning it to the queue")
                report.failed_chunks += 1
                report.retry_message_ids.update(mid for expense_id in chunk for mid in expense_messages[expense_id])
                continue
            missing = len(chunk) - len(expenses)
            if missing:
                logger.warning(f"[{user_id} {index}/{total_chunks}] {missing} expenses not found in store")
            counts, chunk_failed = await self.process_chunk(user_id, expenses)
            report.counts += counts
            report.failed_chunks += int(chunk_failed)
            logger.info(
                f"[{user_id} {index}/{total_chunks}] {counts.successful} categorized, {counts.failed} failed, "
                f"{counts.skipped} skipped"
            )
        return report

    async def process_chunk(self, user_id: str, expenses: Sequence[Expense]) -> tuple[BatchCounts, bool]:
        """Classify the eligible expenses of one chunk. Returns the counts and whether the whole chunk failed."""
        foreign = [expense.id for expense in expenses if expense.user_id != user_id]
        if foreign:
            logger.warning(f"Skipping {len(foreign)} expenses not owned by user {user_id}: {foreign}")
        eligible = [expense for expense in expenses if expense.is_eligible_for_ai and expense.user_id == user_id]
        counts = BatchCounts(
            total_processed=len(expenses),
            eligible=len(eligible),
            skipped=len(expenses) - len(eligible),
        )
        if not eligible:
            logger.info(f"No eligible expenses for user {user_id} ({len(expenses)} read)")
            return counts, False

        try:
            for expense in eligible:
                await self.store.update(expense.id, ai_categorization_status=AICategorizationStatus.PROCESSING)
            catalog = await self.catalog.get_catalog(user_id)
            outcomes = await self.classifier.categorize_batch(eligible, catalog.all)
        except Exception:
            logger.exception(f"Chunk of {len(eligible)} expenses for user {user_id} failed; marking all failed")
            for expense in eligible:
                await self._mark_failed(expense.id)
            counts.failed = len(eligible)
            return counts, True

        by_id = {outcome.expense_id: outcome for outcome in outcomes}
        for expense in eligible:
            if await self._record_outcome(expense, by_id.get(expense.id)):
                counts.successful += 1
            else:
                counts.failed += 1
        return counts, False

    async def _record_outcome(self, expense: Expense, outcome: ClassificationOutcome | None) -> bool:
        if outcome is None or not outcome.success or outcome.suggestion is None:
            error = outcome.error if outcome else "no result returned"
            logger.warning(f"Expense {expense.id} categorization failed: {error}")
            await self._mark_failed(expense.id)
            return False
        suggestion = outcome.suggestion
        try:
            await self.store.update(
                expense.id,
                ai_categorization_status=AICategorizationStatus.COMPLETED,
                ai_category_suggestion=suggestion.category,
                ai_category_confidence=suggestion.confidence,
                ai_category_reasoning=suggestion.reasoning,
                ai_categorized_at=utcnow(),
            )
        except Exception:
            logger.exception(f"Could not store suggestion for expense {expense.id}")
            await self._mark_failed(expense.id)
            return False
        return True

    async def _mark_failed(self, expense_id: str) -> None:
        try:
            await self.store.update(expense_id, ai_categorization_status=AICategorizationStatus.FAILED)
        except Exception:
            logger.exception(f"Could not mark expense {expense_id} as failed")
