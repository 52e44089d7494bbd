"""SQLAlchemy-backed duplicate lookup for the policy evaluator."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.expenses.models import Expense
from expenseflow.policy.evaluator import DuplicateLookupError


class SqlDuplicateLookup:
    """Searches active, non-deleted expenses in the current session.

    Each query runs in a SAVEPOINT so a failed lookup rolls back only itself
    and the caller's transaction stays usable.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _first(self, query) -> Optional[uuid.UUID]:
        # Flush outside the savepoint; a failed write is not a lookup failure
        await self.db.flush()
        try:
            async with self.db.begin_nested():
                return (await self.db.execute(query.limit(1))).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise DuplicateLookupError(str(exc)) from exc

    def _base(self, exclude_id: Optional[uuid.UUID]):
        query = select(Expense.id).where(
            Expense.is_active.is_(True),
            Expense.is_deleted.is_(False),
        )
        if exclude_id is not None:
            query = query.where(Expense.id != exclude_id)
        return query

    async def find_by_receipt_hash(
        self, receipt_hash: str, *, exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[uuid.UUID]:
        query = self._base(exclude_id).where(Expense.receipt_hash == receipt_hash)
        return await self._first(query)

    async def find_soft_duplicate(
        self,
        *,
        submitted_by: uuid.UUID,
        normalized_key: str,
        start: date,
        end: date,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[uuid.UUID]:
        query = self._base(exclude_id).where(
            Expense.submitted_by == submitted_by,
            Expense.normalized_key == normalized_key,
            Expense.expense_date >= start,
            Expense.expense_date < end,
        )
        return await self._first(query)
