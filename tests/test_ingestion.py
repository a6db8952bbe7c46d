"""Tests for the ingestion fan-out and CSV row mapping."""

import asyncio
import json
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from categorizer.core.db import ExpenseStore
from categorizer.core.errors import DeliveryFailure, ValidationError
from categorizer.core.models import AICategorizationStatus, IngestRow, WorkItem
from categorizer.core.utils import expense_id_for
from categorizer.services.ingestion import IngestionService, build_expense, rows_from_csv
from categorizer.services.queue import InMemoryWorkQueue

WHEN = datetime(2024, 1, 15, 8, 30, tzinfo=UTC)


class BrokenQueue(InMemoryWorkQueue):
    """A queue whose sends always fail."""

    async def send(self, body: str) -> str:
        """Fail every send."""
        msg = f"queue unavailable for {body}"
        raise DeliveryFailure(msg)


def _rows() -> list[IngestRow]:
    return [
        IngestRow(summary="Coffee Shop", amount=Decimal("4.50"), timestamp=WHEN),
        IngestRow(summary="Gas Station", amount=Decimal("40.00"), timestamp=WHEN),
        IngestRow(summary="Rent", amount=Decimal("1200.00"), timestamp=WHEN, category="Bills & Utilities"),
    ]


def test_ingest_stores_all_rows_and_enqueues_uncategorized(store: ExpenseStore, queue: InMemoryWorkQueue) -> None:
    """With AI enabled, rows without a category are pending and queued; manual categories are committed."""
    report = asyncio.run(IngestionService(store, queue).ingest("user-1", _rows(), ai_categorization_enabled=True))

    if (report.total_rows, report.stored, report.enqueued, report.partial) != (3, 3, 2, False):
        msg = f"Unexpected report {report}"
        raise AssertionError(msg)

    coffee = asyncio.run(store.get(expense_id_for("user-1", "Coffee Shop", WHEN)))
    rent = asyncio.run(store.get(expense_id_for("user-1", "Rent", WHEN)))
    if coffee.ai_categorization_status is not AICategorizationStatus.PENDING or not coffee.ai_categorization_enabled:
        msg = f"Expected Coffee Shop to be pending AI categorization, got {coffee}"
        raise AssertionError(msg)
    if rent.category != "Bills & Utilities" or rent.ai_categorization_status is not None or not rent.categorized_at:
        msg = f"Expected Rent to be manually categorized and not enrolled, got {rent}"
        raise AssertionError(msg)

    messages = asyncio.run(queue.receive())
    items = [WorkItem.model_validate_json(message.body) for message in messages]
    if {item.expense_id for item in items} != {coffee.id, expense_id_for("user-1", "Gas Station", WHEN)}:
        msg = f"Expected work items for the two uncategorized rows, got {items}"
        raise AssertionError(msg)
    body = json.loads(messages[0].body)
    if set(body) != {"expenseId", "userId", "enqueuedAt"}:
        msg = f"Expected camelCase work item fields, got {sorted(body)}"
        raise AssertionError(msg)


def test_ingest_without_ai_enqueues_nothing(store: ExpenseStore, queue: InMemoryWorkQueue) -> None:
    """AI disabled: everything is stored, nothing is enrolled."""
    report = asyncio.run(IngestionService(store, queue).ingest("user-1", _rows()))
    if report.stored != 3 or report.enqueued != 0 or len(queue) != 0:
        msg = f"Expected nothing enqueued, got {report}"
        raise AssertionError(msg)


def test_expense_id_is_deterministic_and_user_scoped() -> None:
    """Same user, summary and timestamp give the same id; another user gets another id."""
    row = IngestRow(summary="Coffee Shop", amount=Decimal("4.50"), timestamp=WHEN)
    first, _ = build_expense("user-1", row, ai_categorization_enabled=True)
    second, _ = build_expense("user-1", row, ai_categorization_enabled=False)
    other, _ = build_expense("user-2", row, ai_categorization_enabled=True)
    if first.id != second.id or first.id == other.id or len(first.id) != 64:
        msg = "Expected a stable per-user SHA-256 id"
        raise AssertionError(msg)


def test_reingesting_marks_duplicate_and_keeps_committed_category(
    store: ExpenseStore, queue: InMemoryWorkQueue
) -> None:
    """A colliding row is annotated; an already categorized expense is not enrolled again."""
    service = IngestionService(store, queue)
    row = IngestRow(summary="Coffee Shop", amount=Decimal("4.50"), timestamp=WHEN)
    asyncio.run(service.ingest("user-1", [row], ai_categorization_enabled=True))
    expense_id = expense_id_for("user-1", "Coffee Shop", WHEN)
    asyncio.run(store.update(expense_id, category="Food & Dining"))

    report = asyncio.run(service.ingest("user-1", [row], ai_categorization_enabled=True))

    expense = asyncio.run(store.get(expense_id))
    if report.duplicates != 1 or report.enqueued != 0:
        msg = f"Expected one duplicate and no new work, got {report}"
        raise AssertionError(msg)
    if expense.category != "Food & Dining":
        msg = f"Expected the committed category to survive, got {expense.category}"
        raise AssertionError(msg)
    if not expense.note or f"(ID: {expense_id})" not in expense.note:
        msg = f"Expected a duplicate note, got {expense.note!r}"
        raise AssertionError(msg)


def test_enqueue_failure_is_partial_and_leaves_expense_pending(store: ExpenseStore) -> None:
    """A failed send is counted; the stored expense remains pending."""
    rows = _rows()[:1]
    report = asyncio.run(IngestionService(store, BrokenQueue()).ingest("user-1", rows, ai_categorization_enabled=True))

    if (report.stored, report.enqueued, report.enqueue_failed, report.partial) != (1, 0, 1, True):
        msg = f"Unexpected report {report}"
        raise AssertionError(msg)
    expense = asyncio.run(store.get(expense_id_for("user-1", "Coffee Shop", WHEN)))
    if expense.ai_categorization_status is not AICategorizationStatus.PENDING:
        msg = f"Expected pending, got {expense.ai_categorization_status}"
        raise AssertionError(msg)


def test_rows_from_csv_maps_columns_and_counts_invalid_rows() -> None:
    """Mapped columns become rows; unparseable rows are counted, not raised."""
    data = (
        b"Description,Value,Date,Cat\n"
        b"Coffee Shop,$4.50,2024-01-15T08:30:00Z,\n"
        b"Rent,\"1,200.00\",2024-01-01T00:00:00Z,Bills & Utilities\n"
        b"Refund,(12.00),2024-01-20T00:00:00Z,\n"
        b"Broken,abc,not a date,\n"
    )
    mapping = {"summary": "Description", "amount": "Value", "timestamp": "Date", "category": "Cat"}

    rows, invalid = rows_from_csv(data, mapping)

    if invalid != 1 or [row.summary for row in rows] != ["Coffee Shop", "Rent", "Refund"]:
        msg = f"Expected 3 valid rows and 1 invalid, got {rows} / {invalid}"
        raise AssertionError(msg)
    if [row.amount for row in rows] != [Decimal("4.50"), Decimal("1200.00"), Decimal("-12.00")]:
        msg = f"Unexpected amounts {[row.amount for row in rows]}"
        raise AssertionError(msg)
    if rows[0].category is not None or rows[1].category != "Bills & Utilities":
        msg = "Expected blank categories to be None and filled ones kept"
        raise AssertionError(msg)


@pytest.mark.parametrize(
    "mapping",
    [
        {"summary": "Description", "amount": "Value"},
        {"summary": "Description", "amount": "Value", "timestamp": "Missing"},
    ],
)
def test_rows_from_csv_rejects_bad_mapping(mapping: dict) -> None:
    """Missing mapping fields or unknown columns are validation errors."""
    with pytest.raises(ValidationError):
        rows_from_csv(b"Description,Value,Date\nx,1,2024-01-01\n", mapping)


def test_rows_from_csv_accepts_bank_date_formats() -> None:
    """US, day-first and ISO dates all parse; only unreadable dates are invalid."""
    data = (
        b"Description,Value,Date\n"
        b"Coffee,4.50,01/15/2024\n"
        b"Rent,1200,15/01/2024\n"
        b"Gas,30,2024-01-15\n"
        b"Lunch,12,2024-01-15T12:30:00Z\n"
        b"Mystery,5,someday\n"
    )
    mapping = {"summary": "Description", "amount": "Value", "timestamp": "Date"}

    rows, invalid = rows_from_csv(data, mapping)

    if invalid != 1 or [row.summary for row in rows] != ["Coffee", "Rent", "Gas", "Lunch"]:
        msg = f"Expected 4 valid rows and 1 invalid, got {[row.summary for row in rows]} / {invalid}"
        raise AssertionError(msg)
    expected_day = datetime(2024, 1, 15, tzinfo=UTC)
    for row in rows[:3]:
        if row.timestamp != expected_day:
            msg = f"Expected {row.summary} on {expected_day}, got {row.timestamp}"
            raise AssertionError(msg)
    if rows[3].timestamp != datetime(2024, 1, 15, 12, 30, tzinfo=UTC):
        msg = f"Expected the ISO time to be kept, got {rows[3].timestamp}"
        raise AssertionError(msg)


def test_rows_from_csv_dayfirst_settles_ambiguous_dates() -> None:
    """``02/03/2024`` is February 3rd by default and March 2nd with dayfirst."""
    data = b"Description,Value,Date\nBook,10,02/03/2024\n"
    mapping = {"summary": "Description", "amount": "Value", "timestamp": "Date"}

    (us_row,), _ = rows_from_csv(data, mapping)
    (eu_row,), _ = rows_from_csv(data, mapping, dayfirst=True)

    if (us_row.timestamp.month, us_row.timestamp.day) != (2, 3):
        msg = f"Expected February 3rd, got {us_row.timestamp}"
        raise AssertionError(msg)
    if (eu_row.timestamp.month, eu_row.timestamp.day) != (3, 2):
        msg = f"Expected March 2nd, got {eu_row.timestamp}"
        raise AssertionError(msg)
