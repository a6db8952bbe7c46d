"""Core package: provides models, the expense store, settings, errors, and shared utilities."""

from .db import ExpenseStore  # noqa: F401
from .models import AICategorizationStatus, AIValidation, Expense, WorkItem  # noqa: F401
from .settings import Settings  # noqa: F401
