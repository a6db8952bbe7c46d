"""Expense Store: SQLAlchemy-backed key-value table of expenses keyed by content digest.

Every record is addressed by its ``id``. Writes are plain overwrites (last writer wins); there is no version column,
so concurrent writers can interleave. Amounts are kept as decimal strings so their scale survives a round trip. The
async methods run the synchronous SQLAlchemy session work in a thread so that callers never block the event loop.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import Boolean, Column, Float, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from categorizer.core.models import AICategorizationStatus, AIValidation, Expense
from categorizer.core.utils import utcnow

Base = declarative_base()

T = TypeVar("T")

_DATETIME_FIELDS = ("timestamp", "created_at", "updated_at", "categorized_at", "ai_categorized_at")


class ExpenseRecord(Base):
    """One row per expense."""

    __tablename__ = "expenses"
    id = Column(String(64), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    summary = Column(Text, nullable=False)
    amount = Column(String(40), nullable=False)
    timestamp = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
    category = Column(String, nullable=True)
    categorized_at = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    ai_categorization_enabled = Column(Boolean, nullable=True)
    ai_categorization_status = Column(String(16), nullable=True)
    ai_category_suggestion = Column(String, nullable=True)
    ai_category_confidence = Column(Float, nullable=True)
    ai_category_reasoning = Column(Text, nullable=True)
    ai_validation = Column(String(16), nullable=False, default=AIValidation.UNVALIDATED.value)
    ai_categorized_at = Column(String, nullable=True)


COLUMNS = tuple(column.name for column in ExpenseRecord.__table__.columns)


def _to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return value.isoformat() if isinstance(value, datetime) else str(value)
    if name == "amount":
        return str(Decimal(str(value)))
    if isinstance(value, AICategorizationStatus | AIValidation):
        return value.value
    return value


def record_to_expense(record: ExpenseRecord) -> Expense:
    """Convert an ORM row into an ``Expense``."""
    values = {name: getattr(record, name) for name in COLUMNS}
    for name in _DATETIME_FIELDS:
        if values[name] is not None:
            values[name] = datetime.fromisoformat(values[name])
    if values["ai_validation"] is None:
        values["ai_validation"] = AIValidation.UNVALIDATED
    return Expense.model_validate(values)


def expense_to_values(expense: Expense) -> dict[str, Any]:
    """Column values for an ``Expense``."""
    return {name: _to_column(name, getattr(expense, name)) for name in COLUMNS}


class ExpenseStore:
    """Durable expense table with get/put/update/batch-get/query-by-user."""

    def __init__(self, engine: Engine) -> None:
        """Initialize the store with a SQLAlchemy engine."""
        self.engine = engine
        self.Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "ExpenseStore":
        """Create a store for a database URL."""
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        return cls(create_engine(url, connect_args=connect_args))

    def create_tables(self) -> None:
        """Create the expenses table if it does not exist."""
        Base.metadata.create_all(self.engine)

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self.Session() as session, session.begin():
                return fn(session)

        return await asyncio.to_thread(work)

    async def get(self, expense_id: str) -> Expense | None:
        """Fetch one expense by id."""

        def op(session: Session) -> Expense | None:
            record = session.get(ExpenseRecord, expense_id)
            return record_to_expense(record) if record else None

        return await self._run(op)

    async def put(self, expense: Expense) -> None:
        """Insert or overwrite an expense."""
        values = expense_to_values(expense)

        def op(session: Session) -> None:
            session.merge(ExpenseRecord(**values))

        await self._run(op)

    async def update(self, expense_id: str, **changes: Any) -> Expense | None:
        """Overwrite the given fields and stamp ``updated_at``. Returns ``None`` if the expense does not exist."""
        unknown = set(changes) - set(COLUMNS)
        if unknown:
            msg = f"Unknown expense fields: {sorted(unknown)}"
            raise ValueError(msg)
        changes.setdefault("updated_at", utcnow())
        values = {name: _to_column(name, value) for name, value in changes.items()}

        def op(session: Session) -> Expense | None:
            record = session.get(ExpenseRecord, expense_id)
            if record is None:
                return None
            for name, value in values.items():
                setattr(record, name, value)
            session.flush()
            return record_to_expense(record)

        return await self._run(op)

    async def batch_get(self, expense_ids: Iterable[str]) -> list[Expense]:
        """Fetch several expenses in one read, in request order. Missing ids are omitted."""
        ids = list(dict.fromkeys(expense_ids))
        if not ids:
            return []

        def op(session: Session) -> list[Expense]:
            records = session.scalars(select(ExpenseRecord).where(ExpenseRecord.id.in_(ids))).all()
            by_id = {record.id: record_to_expense(record) for record in records}
            return [by_id[expense_id] for expense_id in ids if expense_id in by_id]

        return await self._run(op)

    async def query_by_user(
        self,
        user_id: str,
        *,
        categorized: bool | None = None,
        limit: int | None = None,
    ) -> list[Expense]:
        """List a user's expenses, newest first, optionally filtered on whether a category is set."""

        def op(session: Session) -> list[Expense]:
            stmt = select(ExpenseRecord).where(ExpenseRecord.user_id == user_id)
            if categorized is True:
                stmt = stmt.where(ExpenseRecord.category.is_not(None))
            elif categorized is False:
                stmt = stmt.where(ExpenseRecord.category.is_(None))
            stmt = stmt.order_by(ExpenseRecord.timestamp.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [record_to_expense(record) for record in session.scalars(stmt).all()]

        return await self._run(op)
