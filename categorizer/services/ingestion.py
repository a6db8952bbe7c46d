"""Ingestion fan-out: store each uploaded row as an expense and enqueue the ones that need AI categorization."""

import io
import re
from collections.abc import Iterable

import pandas as pd
from pydantic import ValidationError as PydanticValidationError

from categorizer.core.db import ExpenseStore
from categorizer.core.errors import ValidationError
from categorizer.core.models import AICategorizationStatus, Expense, IngestionReport, IngestRow, WorkItem
from categorizer.core.utils import expense_id_for, get_logger, utcnow
from categorizer.services.queue import WorkQueue

REQUIRED_MAPPING_FIELDS = ("summary", "amount", "timestamp")

logger = get_logger("expense-categorizer.ingest")


def _clean_amount(raw: str) -> str:
    """Strip currency symbols and thousands separators; ``(12.50)`` means ``-12.50``."""
    value = raw.strip()
    negative = value.startswith("(") and value.endswith(")")
    value = re.sub(r"[^\d.\-+]", "", value)
    return f"-{value.lstrip('-')}" if negative and value else value


def rows_from_csv(
    data: bytes,
    field_mapping: dict[str, str],
    dayfirst: bool = False,
) -> tuple[list[IngestRow], int]:
    """Map CSV columns onto ingest rows. Returns the valid rows and the number of rows that could not be used.

    Dates are parsed by pandas one value at a time, so ISO, US (``01/15/2024``) and day-first (``15/01/2024``) values
    can share a file. ``dayfirst`` decides values that read either way, such as ``02/03/2024``. Naive values are
    taken as UTC.
    """
    missing = [field for field in REQUIRED_MAPPING_FIELDS if not field_mapping.get(field)]
    if missing:
        msg = f"Missing required field mapping: {', '.join(missing)}"
        raise ValidationError(msg)
    try:
        frame = pd.read_csv(io.BytesIO(data), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        msg = f"Error parsing CSV file: {exc}"
        raise ValidationError(msg) from exc
    frame.columns = [str(column).strip() for column in frame.columns]
    wanted = [field_mapping[field] for field in (*REQUIRED_MAPPING_FIELDS, "category") if field_mapping.get(field)]
    unknown = [column for column in wanted if column not in frame.columns]
    if unknown:
        msg = f"Columns not found in CSV: {', '.join(unknown)}"
        raise ValidationError(msg)

    timestamps = pd.to_datetime(
        frame[field_mapping["timestamp"]].str.strip(),
        errors="coerce",
        dayfirst=dayfirst,
        format="mixed",
        utc=True,
    )
    rows: list[IngestRow] = []
    invalid = 0
    for index, record in enumerate(frame.to_dict(orient="records"), start=1):
        values = {field: str(record[field_mapping[field]]).strip() for field in REQUIRED_MAPPING_FIELDS}
        values["amount"] = _clean_amount(values["amount"])
        parsed = timestamps.iloc[index - 1]
        values["timestamp"] = None if pd.isna(parsed) else parsed.to_pydatetime()
        if field_mapping.get("category"):
            values["category"] = str(record[field_mapping["category"]]).strip() or None
        try:
            rows.append(IngestRow.model_validate(values))
        except PydanticValidationError as exc:
            invalid += 1
            logger.warning(f"[CSV ROW {index}] Skipping invalid row ({exc.error_count()} errors): {values}")
    logger.info(f"Parsed {len(rows)} rows from CSV ({invalid} invalid)")
    return rows, invalid


def build_expense(
    user_id: str,
    row: IngestRow,
    ai_categorization_enabled: bool,
    existing: Expense | None = None,
) -> tuple[Expense, bool]:
    """Build the expense to write for ``row`` and whether it must be enqueued.

    A category on the row always wins over AI. An existing record that already carries a category keeps it, together
    with its AI fields, so that re-ingesting a categorized row never enrolls it again. Collisions are annotated.
    """
    now = utcnow()
    expense_id = expense_id_for(user_id, row.summary, row.timestamp)
    note = None
    if existing is not None:
        note = (
            "Duplicate detected: Another expense with the same summary and timestamp already exists "
            f"(ID: {existing.id})"
        )

    if existing is not None and existing.category and not (row.category and row.category.strip()):
        expense = existing.model_copy(update={"amount": row.amount, "note": note, "updated_at": now})
        return expense, False

    expense = Expense(
        id=expense_id,
        user_id=user_id,
        summary=row.summary,
        amount=row.amount,
        timestamp=row.timestamp,
        created_at=existing.created_at if existing else now,
        updated_at=now,
        note=note,
    )
    manual = row.category.strip() if row.category else ""
    if manual:
        expense.category = manual
        expense.categorized_at = now
        return expense, False
    if ai_categorization_enabled:
        expense.ai_categorization_enabled = True
        expense.ai_categorization_status = AICategorizationStatus.PENDING
        return expense, True
    return expense, False


class IngestionService:
    """Fans a batch of rows out into stored expenses and queued work items."""

    def __init__(self, store: ExpenseStore, queue: WorkQueue) -> None:
        """Initialize the service with the expense store and the categorization queue."""
        self.store = store
        self.queue = queue

    async def ingest(
        self,
        user_id: str,
        rows: Iterable[IngestRow],
        ai_categorization_enabled: bool = False,
    ) -> IngestionReport:
        """Store every row, then enqueue enrolled ones. Per-row failures are counted, never raised."""
        report = IngestionReport()
        for index, row in enumerate(rows, start=1):
            report.total_rows += 1
            expense_id = expense_id_for(user_id, row.summary, row.timestamp)
            try:
                existing = await self.store.get(expense_id)
                expense, enroll = build_expense(user_id, row, ai_categorization_enabled, existing)
                await self.store.put(expense)
            except Exception:
                logger.exception(f"[ROW {index}] Failed to store expense {expense_id}")
                report.store_failed += 1
                continue
            report.stored += 1
            if existing is not None:
                report.duplicates += 1
                logger.warning(f"[ROW {index}] Duplicate expense {expense_id} overwritten")
            if not enroll:
                continue

            item = WorkItem(expense_id=expense.id, user_id=user_id, enqueued_at=utcnow())
            try:
                await self.queue.send(item.model_dump_json(by_alias=True))
            except Exception:
                logger.exception(f"[ROW {index}] Failed to enqueue expense {expense_id}; it stays pending")
                report.enqueue_failed += 1
                continue
            report.enqueued += 1

        log = logger.warning if report.partial else logger.info
        log(
            f"Ingest for user {user_id}: {report.stored}/{report.total_rows} stored, {report.enqueued} enqueued, "
            f"{report.enqueue_failed} enqueue failures, {report.store_failed} store failures"
        )
        return report
