"""Shared fixtures: an isolated SQLite store, an in-memory queue and a fake chat-completions client."""

import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="categorizer-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP / 'api.db'}")
os.environ.setdefault("LOG_FILE", str(_TMP / "categorizer.log"))
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("QUEUE_BACKEND", "memory")

from categorizer.core.db import ExpenseStore  # noqa: E402
from categorizer.core.models import AICategorizationStatus, Expense  # noqa: E402
from categorizer.core.settings import Settings  # noqa: E402
from categorizer.core.utils import expense_id_for  # noqa: E402
from categorizer.services.queue import InMemoryWorkQueue  # noqa: E402


class FakeCompletions:
    """Stands in for ``client.chat.completions``; replies are consumed in call order, the last one repeats."""

    def __init__(self, replies: list) -> None:
        """Initialize with replies: strings (content), exceptions (raised) or callables of the request kwargs."""
        self.replies = list(replies)
        self.calls: list[dict] = []

    async def create(self, **kwargs: object) -> SimpleNamespace:
        """Record the request and return the next reply."""
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if callable(reply):
            reply = reply(kwargs)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


def fake_llm_client(replies: list) -> SimpleNamespace:
    """Build an object exposing ``chat.completions.create`` like the Groq async client."""
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(replies)))


class StatusError(Exception):
    """An API error carrying an HTTP status code."""

    def __init__(self, status_code: int) -> None:
        """Initialize with the status code."""
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def make_expense(
    user_id: str = "user-1",
    summary: str = "Coffee Shop",
    amount: str = "4.50",
    timestamp: datetime | None = None,
    **fields: object,
) -> Expense:
    """Build an expense with a deterministic id."""
    when = timestamp or datetime(2024, 1, 15, 8, 30, tzinfo=UTC)
    now = datetime(2024, 1, 16, 10, 0, tzinfo=UTC)
    return Expense(
        id=expense_id_for(user_id, summary, when),
        user_id=user_id,
        summary=summary,
        amount=Decimal(amount),
        timestamp=when,
        created_at=now,
        updated_at=now,
        **fields,
    )


def pending_expense(user_id: str = "user-1", summary: str = "Coffee Shop", **fields: object) -> Expense:
    """An expense enrolled for AI categorization and waiting in the queue."""
    return make_expense(
        user_id,
        summary,
        ai_categorization_enabled=True,
        ai_categorization_status=AICategorizationStatus.PENDING,
        **fields,
    )


@pytest.fixture
def store(tmp_path: Path) -> ExpenseStore:
    """A fresh SQLite-backed store."""
    expense_store = ExpenseStore.from_url(f"sqlite:///{tmp_path / 'expenses.db'}")
    expense_store.create_tables()
    return expense_store


@pytest.fixture
def queue() -> InMemoryWorkQueue:
    """An in-memory queue with a short lease."""
    return InMemoryWorkQueue(visibility_timeout=30, max_receive_count=3)


@pytest.fixture
def settings() -> Settings:
    """Classifier settings for tests."""
    return Settings(groq_api_key="test-key", retry_attempts=3)


@pytest.fixture
def sleeps() -> tuple[list[float], Callable]:
    """A sleep replacement that records requested delays instead of waiting."""
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    return delays, fake_sleep
