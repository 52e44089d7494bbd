"""Persistence port for the approval workflow and its SQLAlchemy implementation."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Iterator, Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from expenseflow.budget.ledger import BudgetAlert, BudgetLedger
from expenseflow.common.audit import create_audit_entry
from expenseflow.common.constants import (
    ACTIVE_PENDING_STATUSES,
    PendingApproverStatus,
    UserRole,
)
from expenseflow.common.exceptions import InvalidStateError
from expenseflow.expenses.models import (
    ApprovalHistory,
    Expense,
    ExpenseComment,
    PendingApprover,
)
from expenseflow.policy.evaluator import DuplicateLookup
from expenseflow.policy.lookup import SqlDuplicateLookup
from expenseflow.sites.models import Site
from expenseflow.users.models import User

logger = logging.getLogger(__name__)


class WorkflowRepository(Protocol):
    """Everything the engine reads or writes, and nothing else."""

    async def get_expense(self, expense_id: uuid.UUID) -> Optional[Expense]: ...

    async def save_expense(self, expense: Expense) -> None: ...

    async def expense_number_taken(
        self, expense_number: str, *, exclude_id: Optional[uuid.UUID] = None,
    ) -> bool: ...

    async def list_pending_approvers(
        self,
        expense_id: uuid.UUID,
        *,
        level: Optional[int] = None,
        active_only: bool = True,
    ) -> Sequence[PendingApprover]: ...

    async def create_pending_approver(
        self, expense_id: uuid.UUID, approver_id: uuid.UUID, level: int,
    ) -> PendingApprover: ...

    async def retire_pending_approvers(
        self,
        expense_id: uuid.UUID,
        *,
        level: Optional[int] = None,
        completed_by: Optional[uuid.UUID] = None,
    ) -> int: ...

    async def append_approval_history(self, **fields) -> ApprovalHistory: ...

    async def get_active_approvers_for_site(
        self, site_id: uuid.UUID, role: UserRole,
    ) -> Sequence[User]: ...

    async def get_active_l3_approvers(self) -> Sequence[User]: ...

    async def get_active_finance_users(self) -> Sequence[User]: ...

    async def get_site(self, site_id: uuid.UUID) -> Optional[Site]: ...

    async def apply_site_spend(
        self, site: Site, expense: Expense, *, today: Optional[date] = None,
    ) -> Optional[BudgetAlert]: ...

    async def add_comment(
        self, expense_id: uuid.UUID, user_id: uuid.UUID, text: str, *, is_internal: bool = False,
    ) -> ExpenseComment: ...

    async def record_audit(
        self,
        *,
        action: str,
        expense: Expense,
        actor_id: Optional[uuid.UUID],
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
    ) -> None: ...

    def duplicate_lookup(self) -> DuplicateLookup: ...


class SqlWorkflowRepository:
    """``WorkflowRepository`` over a request-scoped ``AsyncSession``.

    Writes are flushed, never committed; the request owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @contextmanager
    def _stale_guard(self) -> Iterator[None]:
        """Any flush, explicit or autoflush, can hit a bumped ``Expense.version``."""
        try:
            yield
        except StaleDataError as exc:
            logger.warning("Concurrent modification of an expense: %s", exc)
            raise InvalidStateError(
                "Expense was modified by another request; reload and retry.",
            ) from exc

    async def _flush(self) -> None:
        with self._stale_guard():
            await self.db.flush()

    async def _execute(self, query):
        with self._stale_guard():
            return await self.db.execute(query)

    # ── Expenses ────────────────────────────────────────────────────

    async def get_expense(self, expense_id: uuid.UUID) -> Optional[Expense]:
        result = await self._execute(
            select(Expense).where(
                Expense.id == expense_id,
                Expense.is_deleted.is_(False),
            )
        )
        return result.scalars().first()

    async def save_expense(self, expense: Expense) -> None:
        """Flush *expense*; a concurrent writer surfaces as ``InvalidStateError``."""
        self.db.add(expense)
        await self._flush()

    async def expense_number_taken(
        self, expense_number: str, *, exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        query = select(func.count()).select_from(Expense).where(
            Expense.expense_number == expense_number,
        )
        if exclude_id is not None:
            query = query.where(Expense.id != exclude_id)
        return (await self._execute(query)).scalar_one() > 0

    # ── Pending approvers ───────────────────────────────────────────

    async def list_pending_approvers(
        self,
        expense_id: uuid.UUID,
        *,
        level: Optional[int] = None,
        active_only: bool = True,
    ) -> Sequence[PendingApprover]:
        query = select(PendingApprover).where(PendingApprover.expense_id == expense_id)
        if level is not None:
            query = query.where(PendingApprover.level == level)
        if active_only:
            query = query.where(PendingApprover.status.in_(ACTIVE_PENDING_STATUSES))
        query = query.order_by(PendingApprover.level, PendingApprover.assigned_date)
        return (await self._execute(query)).scalars().all()

    async def create_pending_approver(
        self, expense_id: uuid.UUID, approver_id: uuid.UUID, level: int,
    ) -> PendingApprover:
        row = PendingApprover(
            expense_id=expense_id,
            approver_id=approver_id,
            level=level,
            status=PendingApproverStatus.pending.value,
        )
        self.db.add(row)
        await self._flush()
        return row

    async def retire_pending_approvers(
        self,
        expense_id: uuid.UUID,
        *,
        level: Optional[int] = None,
        completed_by: Optional[uuid.UUID] = None,
    ) -> int:
        """Close every active row; *completed_by*'s own row is marked completed."""
        rows = await self.list_pending_approvers(expense_id, level=level)
        now = datetime.now(timezone.utc)
        for row in rows:
            if completed_by is not None and row.approver_id == completed_by:
                row.status = PendingApproverStatus.completed.value
            else:
                row.status = PendingApproverStatus.cancelled.value
            row.completed_at = now
        await self._flush()
        return len(rows)

    # ── History / comments ──────────────────────────────────────────

    async def append_approval_history(self, **fields) -> ApprovalHistory:
        entry = ApprovalHistory(**fields)
        self.db.add(entry)
        await self._flush()
        return entry

    async def add_comment(
        self, expense_id: uuid.UUID, user_id: uuid.UUID, text: str, *, is_internal: bool = False,
    ) -> ExpenseComment:
        comment = ExpenseComment(
            expense_id=expense_id, user_id=user_id, text=text, is_internal=is_internal,
        )
        self.db.add(comment)
        await self._flush()
        return comment

    # ── Approver pools ──────────────────────────────────────────────

    async def _active_users(self, *conditions) -> Sequence[User]:
        query = (
            select(User)
            .where(User.is_active.is_(True), *conditions)
            .order_by(User.name)
        )
        return (await self._execute(query)).scalars().all()

    async def get_active_approvers_for_site(
        self, site_id: uuid.UUID, role: UserRole,
    ) -> Sequence[User]:
        return await self._active_users(User.site_id == site_id, User.role == role.value)

    async def get_active_l3_approvers(self) -> Sequence[User]:
        return await self._active_users(User.role == UserRole.l3_approver.value)

    async def get_active_finance_users(self) -> Sequence[User]:
        return await self._active_users(User.role == UserRole.finance.value)

    # ── Sites / budget ──────────────────────────────────────────────

    async def get_site(self, site_id: uuid.UUID) -> Optional[Site]:
        with self._stale_guard():
            return await self.db.get(Site, site_id)

    async def apply_site_spend(
        self, site: Site, expense: Expense, *, today: Optional[date] = None,
    ) -> Optional[BudgetAlert]:
        alert = BudgetLedger.apply_spend(site, expense, today=today)
        await self._flush()
        return alert

    def duplicate_lookup(self) -> DuplicateLookup:
        return SqlDuplicateLookup(self.db)

    # ── Audit ───────────────────────────────────────────────────────

    async def record_audit(
        self,
        *,
        action: str,
        expense: Expense,
        actor_id: Optional[uuid.UUID],
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
    ) -> None:
        with self._stale_guard():
            await create_audit_entry(
                self.db,
                action=action,
                entity_type="expense",
                entity_id=expense.id,
                actor_id=actor_id,
                old_values=old_values,
                new_values=new_values,
            )
