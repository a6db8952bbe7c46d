"""Accept/reject state machine that turns an AI suggestion into the committed category.

Validation only touches the suggestion fields and the final category; ``ai_categorization_status`` is left as the
worker wrote it.
"""

from typing import Any

from categorizer.core.db import ExpenseStore
from categorizer.core.errors import AuthorizationError, NotFoundError, ValidationError
from categorizer.core.models import AIValidation, Expense, ValidationRequest
from categorizer.core.utils import get_logger, utcnow

logger = get_logger("expense-categorizer.validation")


def validation_changes(expense: Expense, request: ValidationRequest) -> dict[str, Any]:
    """Field changes for accepting or rejecting the suggestion on ``expense``."""
    now = utcnow()
    if request.validated:
        if not expense.ai_category_suggestion:
            msg = f"Expense {expense.id} has no AI suggestion to accept"
            raise ValidationError(msg)
        return {
            "ai_validation": AIValidation.ACCEPTED,
            "category": expense.ai_category_suggestion,
            "categorized_at": now,
        }
    replacement = request.category.strip() if request.category else ""
    if replacement:
        return {"ai_validation": AIValidation.REJECTED, "category": replacement, "categorized_at": now}
    return {"ai_validation": AIValidation.REJECTED}


def ensure_owner(expense: Expense | None, expense_id: str, requester_id: str) -> Expense:
    """Return ``expense`` if it exists and belongs to ``requester_id``."""
    if expense is None:
        msg = f"Expense {expense_id} not found"
        raise NotFoundError(msg)
    if expense.user_id != requester_id:
        msg = f"Expense {expense_id} does not belong to the requesting user"
        raise AuthorizationError(msg)
    return expense


class ValidationService:
    """Applies user decisions on AI suggestions and manual category edits."""

    def __init__(self, store: ExpenseStore) -> None:
        """Initialize the service with the expense store."""
        self.store = store

    async def validate(self, requester_id: str, request: ValidationRequest) -> Expense:
        """Accept or reject the suggestion on one expense owned by ``requester_id``."""
        expense = ensure_owner(await self.store.get(request.expense_id), request.expense_id, requester_id)
        changes = validation_changes(expense, request)
        updated = await self.store.update(expense.id, **changes)
        if updated is None:
            msg = f"Expense {expense.id} not found"
            raise NotFoundError(msg)
        logger.info(
            f"Expense {expense.id} suggestion {changes['ai_validation'].value} by {requester_id}; "
            f"category={updated.category!r}"
        )
        return updated

    async def set_category(self, requester_id: str, expense_id: str, category: str) -> Expense:
        """Manually commit ``category`` on an expense owned by ``requester_id``."""
        label = category.strip() if category else ""
        if not label:
            msg = "Category must not be empty"
            raise ValidationError(msg)
        ensure_owner(await self.store.get(expense_id), expense_id, requester_id)
        updated = await self.store.update(expense_id, category=label, categorized_at=utcnow())
        if updated is None:
            msg = f"Expense {expense_id} not found"
            raise NotFoundError(msg)
        logger.info(f"Expense {expense_id} manually categorized as {label!r} by {requester_id}")
        return updated

    async def get_owned(self, requester_id: str, expense_id: str) -> Expense:
        """Fetch one expense owned by ``requester_id``."""
        return ensure_owner(await self.store.get(expense_id), expense_id, requester_id)
