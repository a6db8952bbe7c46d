"""Category Catalog: predefined labels plus labels mined from a user's own categorization history."""

from collections.abc import Iterable

from categorizer.core.db import ExpenseStore
from categorizer.core.models import CategoryCatalog, Expense
from categorizer.core.utils import get_logger

PREDEFINED_CATEGORIES: tuple[str, ...] = (
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Bills & Utilities",
    "Entertainment",
    "Healthcare",
    "Travel",
    "Education",
    "Personal Care",
    "Other",
)

FALLBACK_CATEGORY = "Other"

logger = get_logger("expense-categorizer.catalog")


def extract_user_defined_categories(expenses: Iterable[Expense] | None) -> list[str]:
    """Distinct, trimmed, non-predefined categories found on ``expenses``, sorted."""
    if not expenses:
        return []
    found: set[str] = set()
    for expense in expenses:
        if not isinstance(expense.category, str):
            continue
        category = expense.category.strip()
        if category and category not in PREDEFINED_CATEGORIES:
            found.add(category)
    return sorted(found)


def build_catalog(user_expenses: Iterable[Expense] | None = None) -> CategoryCatalog:
    """Build the catalog from a sample of the user's categorized expenses."""
    predefined = list(PREDEFINED_CATEGORIES)
    user_defined = extract_user_defined_categories(user_expenses)
    return CategoryCatalog(predefined=predefined, user_defined=user_defined, all=predefined + user_defined)


def validate_category(candidate: str | None, available: Iterable[str]) -> str | None:
    """Match ``candidate`` against ``available``: exact first, then case-insensitive.

    Returns the label with the casing used in ``available``, or ``None`` when nothing matches.
    """
    if not candidate or not isinstance(candidate, str):
        return None
    trimmed = candidate.strip()
    if not trimmed:
        return None
    labels = list(available)
    if trimmed in labels:
        return trimmed
    lowered = trimmed.lower()
    return next((label for label in labels if label.lower() == lowered), None)


class CategoryCatalogService:
    """Computes a user's catalog from the expense store on every call."""

    def __init__(self, store: ExpenseStore, sample_size: int = 100) -> None:
        """Initialize the service with the expense store and the history sample size."""
        self.store = store
        self.sample_size = sample_size

    async def get_catalog(self, user_id: str) -> CategoryCatalog:
        """Return the current catalog for ``user_id``; store errors propagate to the caller."""
        sample = await self.store.query_by_user(user_id, categorized=True, limit=self.sample_size)
        catalog = build_catalog(sample)
        logger.info(
            f"Catalog for user {user_id}: {len(catalog.predefined)} predefined, "
            f"{len(catalog.user_defined)} user-defined, {len(catalog.all)} total"
        )
        return catalog
