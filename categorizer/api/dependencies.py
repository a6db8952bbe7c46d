"""FastAPI dependencies for DI (settings, store, queue, services, requester identity).

The store and queue are process-wide singletons; tests replace them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends, Header, HTTPException

from categorizer.core.db import ExpenseStore
from categorizer.core.settings import get_settings
from categorizer.services.ingestion import IngestionService
from categorizer.services.queue import WorkQueue, build_work_queue
from categorizer.services.validation import ValidationService

__all__ = [
    "get_ingestion_service",
    "get_requester_id",
    "get_settings",
    "get_store",
    "get_validation_service",
    "get_work_queue",
]


@lru_cache
def get_store() -> ExpenseStore:
    """Provide the shared expense store."""
    return ExpenseStore.from_url(get_settings().database_url)


@lru_cache
def get_work_queue() -> WorkQueue:
    """Provide the shared categorization queue."""
    return build_work_queue(get_settings())


def get_ingestion_service(
    store: ExpenseStore = Depends(get_store),
    queue: WorkQueue = Depends(get_work_queue),
) -> IngestionService:
    """Provide an IngestionService for dependency injection."""
    return IngestionService(store, queue)


def get_validation_service(store: ExpenseStore = Depends(get_store)) -> ValidationService:
    """Provide a ValidationService for dependency injection."""
    return ValidationService(store)


def get_requester_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, as set by the upstream authenticator."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Unauthorized: User authentication required")
    return x_user_id.strip()
