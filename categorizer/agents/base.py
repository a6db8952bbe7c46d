"""Base classifier abstraction for expense categorization.

This module defines the abstract base class the categorization worker depends on, so that the LLM-backed agent can be
swapped for a test double without network calls.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from categorizer.core.models import ClassificationOutcome, Expense


class BaseClassifier(ABC):
    """Abstract base class for expense classifiers."""

    @abstractmethod
    async def categorize_batch(
        self, expenses: Sequence[Expense], categories: Sequence[str]
    ) -> list[ClassificationOutcome]:
        """Classify each expense against ``categories``; one outcome per expense, in input order."""
