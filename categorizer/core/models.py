"""Pydantic models for the expense categorizer.

This module defines the expense record, its AI categorization state machine, the queue work item, the category catalog,
and the request/report models exchanged by the API, the ingestion fan-out and the categorization worker. JSON uses
camelCase field names; Python code uses snake_case.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AICategorizationStatus(str, Enum):
    """Progress of an expense through AI categorization. Only moves forward."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AIValidation(str, Enum):
    """The user's decision on an AI suggestion."""

    UNVALIDATED = "unvalidated"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Expense(CamelModel):
    """A stored expense, keyed by a content digest."""

    id: str
    user_id: str
    summary: str
    amount: Decimal
    timestamp: datetime
    created_at: datetime
    updated_at: datetime
    category: str | None = None
    categorized_at: datetime | None = None
    note: str | None = None
    ai_categorization_enabled: bool | None = None
    ai_categorization_status: AICategorizationStatus | None = None
    ai_category_suggestion: str | None = None
    ai_category_confidence: float | None = None
    ai_category_reasoning: str | None = None
    ai_validation: AIValidation = AIValidation.UNVALIDATED
    ai_categorized_at: datetime | None = None

    @property
    def is_categorized(self) -> bool:
        """Whether a final category has been committed."""
        return bool(self.category)

    @property
    def is_eligible_for_ai(self) -> bool:
        """Enrolled, still pending, and not yet categorized."""
        return (
            self.ai_categorization_enabled is True
            and self.ai_categorization_status == AICategorizationStatus.PENDING
            and not self.is_categorized
        )


class WorkItem(CamelModel):
    """Queue message asking for one expense to be categorized."""

    expense_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    enqueued_at: datetime | None = None


class CategoryCatalog(CamelModel):
    """Valid category labels for one user."""

    predefined: list[str]
    user_defined: list[str]
    all: list[str]


class CategorySuggestion(BaseModel):
    """Parsed classifier answer for one expense."""

    category: str
    confidence: float
    reasoning: str = ""


class ClassificationOutcome(BaseModel):
    """Per-expense result of a classification batch."""

    expense_id: str
    success: bool
    suggestion: CategorySuggestion | None = None
    error: str | None = None


class BatchCounts(CamelModel):
    """Aggregated categorization counts.

    ``total_processed == eligible + skipped`` and ``eligible == successful + failed``.
    """

    total_processed: int = 0
    eligible: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    def __add__(self, other: "BatchCounts") -> "BatchCounts":
        """Sum two count sets field by field."""
        return BatchCounts(
            total_processed=self.total_processed + other.total_processed,
            eligible=self.eligible + other.eligible,
            successful=self.successful + other.successful,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )


class BatchReport(CamelModel):
    """Result of one worker invocation over a delivered batch."""

    counts: BatchCounts = Field(default_factory=BatchCounts)
    malformed: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    retry_message_ids: set[str] = Field(default_factory=set)


class IngestRow(CamelModel):
    """A normalized statement row."""

    summary: str = Field(min_length=1)
    amount: Decimal
    timestamp: datetime
    category: str | None = None


class IngestRequest(CamelModel):
    """Body of ``POST /expenses/ingest``."""

    rows: list[IngestRow]
    ai_categorization_enabled: bool = False


class IngestionReport(CamelModel):
    """Outcome of an ingestion fan-out."""

    total_rows: int = 0
    stored: int = 0
    enqueued: int = 0
    enqueue_failed: int = 0
    store_failed: int = 0
    duplicates: int = 0
    invalid_rows: int = 0

    @property
    def partial(self) -> bool:
        """Whether any row failed to be stored, enqueued or parsed."""
        return bool(self.enqueue_failed or self.store_failed or self.invalid_rows)


class ValidationRequest(CamelModel):
    """Body of ``POST /expenses/validate``."""

    expense_id: str = Field(min_length=1)
    validated: bool
    category: str | None = None


class CategoryUpdate(CamelModel):
    """Body of ``PUT /expenses/{expense_id}/category``."""

    category: str
