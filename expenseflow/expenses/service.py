"""Expenses service layer — drafts, numbering, receipts, read models.

Status transitions (submit / approve / reject / pay / cancel) belong to
``expenseflow.workflow.engine``; this module never changes ``status``.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.audit import create_audit_entry
from expenseflow.common.constants import (
    ACTIONABLE_STATUSES,
    ACTIVE_PENDING_STATUSES,
    EXPENSE_NUMBER_WIDTH,
    READY_FOR_PAYMENT_STATUS,
    ExpenseCategory,
    ExpenseStatus,
    UserRole,
    has_permission,
)
from expenseflow.common.exceptions import (
    DuplicateNumberError,
    ForbiddenException,
    InvalidStateError,
    NotFoundException,
    ValidationException,
)
from expenseflow.common.pagination import PaginationMeta, PaginationParams, paginate
from expenseflow.config import settings
from expenseflow.expenses.models import ApprovalHistory, Expense, PendingApprover
from expenseflow.expenses.schemas import ExpenseCreate
from expenseflow.policy.evaluator import compute_receipt_hash
from expenseflow.sites.models import Site
from expenseflow.users.models import User

logger = logging.getLogger(__name__)

DELETABLE_STATUSES = frozenset({
    ExpenseStatus.draft.value,
    ExpenseStatus.cancelled.value,
    ExpenseStatus.rejected.value,
})


class ExpenseService:
    """Business logic for expense records outside the approval state machine."""

    # ── Numbering ─────────────────────────────────────────────────────

    @staticmethod
    async def next_number(db: AsyncSession) -> str:
        """Highest ``<PREFIX>-nnnn`` number in use plus one."""
        prefix = f"{settings.EXPENSE_NUMBER_PREFIX}-"
        pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        result = await db.execute(
            select(Expense.expense_number).where(Expense.expense_number.like(f"{prefix}%"))
        )
        highest = 0
        for number in result.scalars().all():
            match = pattern.match(number)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}{highest + 1:0{EXPENSE_NUMBER_WIDTH}d}"

    @staticmethod
    async def number_taken(db: AsyncSession, expense_number: str) -> bool:
        result = await db.execute(
            select(Expense.id).where(Expense.expense_number == expense_number).limit(1)
        )
        return result.scalar_one_or_none() is not None

    # ── Create ────────────────────────────────────────────────────────

    @staticmethod
    async def create_draft(
        db: AsyncSession,
        user: User,
        body: ExpenseCreate,
    ) -> Expense:
        """Create a draft expense owned by *user*."""
        site_id = body.site_id or user.site_id
        if site_id is None:
            raise ValidationException({"site_id": ["A site is required for this expense."]})
        if user.site_id is not None and site_id != user.site_id and UserRole(user.role) not in (
            UserRole.l3_approver, UserRole.finance,
        ):
            raise ForbiddenException("You can only file expenses against your own site.")

        site = await db.get(Site, site_id)
        if site is None or not site.is_active:
            raise NotFoundException("Site", site_id)

        expense_number = body.expense_number or await ExpenseService.next_number(db)
        if await ExpenseService.number_taken(db, expense_number):
            raise DuplicateNumberError(expense_number)

        amount = body.amount
        vehicle_km = None
        if body.category == ExpenseCategory.vehicle_km and body.vehicle_km is not None:
            details = body.vehicle_km
            amount = (details.total_km * details.rate_per_km).quantize(Decimal("0.01"))
            details.exceeds_limit = bool(
                site.vehicle_km_limit and details.total_km > site.vehicle_km_limit
            )
            if details.exceeds_limit and not details.exceed_reason:
                raise ValidationException(
                    {"vehicle_km.exceed_reason": [
                        f"A reason is required above {site.vehicle_km_limit} km."
                    ]}
                )
            vehicle_km = details.model_dump(mode="json")

        expense = Expense(
            expense_number=expense_number,
            title=body.title.strip(),
            description=body.description,
            department=body.department or user.department,
            amount=amount,
            currency=body.currency.value,
            category=body.category.value,
            payment_method=body.payment_method,
            expense_date=body.expense_date,
            vehicle_km=vehicle_km,
            travel=body.travel.model_dump(mode="json", by_alias=True) if body.travel else None,
            accommodation=(
                body.accommodation.model_dump(mode="json") if body.accommodation else None
            ),
            location_lat=body.location_lat,
            location_lng=body.location_lng,
            location_city=body.location_city,
            submitted_by=user.id,
            site_id=site_id,
            status=ExpenseStatus.draft.value,
            current_approval_level=0,
            required_approval_level=0,
            policy_flags=[],
            risk_score=0,
        )
        db.add(expense)
        try:
            await db.flush()
        except IntegrityError as exc:
            # Another request claimed the number between the check and the insert
            await db.rollback()
            if "expense_number" in str(exc.orig):
                raise DuplicateNumberError(expense_number)
            raise

        await create_audit_entry(
            db,
            action="create",
            entity_type="expense",
            entity_id=expense.id,
            actor_id=user.id,
            new_values={
                "expense_number": expense_number,
                "title": expense.title,
                "amount": str(amount),
                "category": expense.category,
            },
        )
        logger.info("Draft expense %s created by %s", expense_number, user.id)
        return expense

    # ── Read ──────────────────────────────────────────────────────────

    @staticmethod
    async def get_expense(db: AsyncSession, expense_id: uuid.UUID) -> Expense:
        result = await db.execute(
            select(Expense).where(Expense.id == expense_id, Expense.is_deleted.is_(False))
        )
        expense = result.scalar_one_or_none()
        if expense is None:
            raise NotFoundException("Expense", expense_id)
        return expense

    @staticmethod
    async def ensure_can_view(db: AsyncSession, user: User, expense: Expense) -> None:
        """Owner, assigned approvers, same-site reviewers and cross-site roles may read."""
        if has_permission(user.role, "expense:read_all"):
            return
        if expense.submitted_by == user.id and has_permission(user.role, "expense:read_own"):
            return
        if has_permission(user.role, "expense:read_site") and expense.site_id == user.site_id:
            return
        assigned = await db.execute(
            select(PendingApprover.id).where(
                PendingApprover.expense_id == expense.id,
                PendingApprover.approver_id == user.id,
            ).limit(1)
        )
        if assigned.scalar_one_or_none() is None:
            raise ForbiddenException("You are not allowed to view this expense.")

    @staticmethod
    async def list_expenses(
        db: AsyncSession,
        user: User,
        params: PaginationParams,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        site_id: Optional[uuid.UUID] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        mine: bool = False,
    ) -> tuple[list[Expense], PaginationMeta]:
        """List expenses visible to *user*, newest first."""
        query = select(Expense).where(Expense.is_deleted.is_(False))

        if mine or not (
            has_permission(user.role, "expense:read_all")
            or has_permission(user.role, "expense:read_site")
        ):
            query = query.where(Expense.submitted_by == user.id)
        elif not has_permission(user.role, "expense:read_all"):
            query = query.where(Expense.site_id == user.site_id)

        if site_id:
            query = query.where(Expense.site_id == site_id)
        if status:
            query = query.where(Expense.status == status)
        if category:
            query = query.where(Expense.category == category)
        if from_date:
            query = query.where(Expense.expense_date >= from_date)
        if to_date:
            query = query.where(Expense.expense_date <= to_date)

        query = query.order_by(Expense.created_at.desc())
        return await paginate(db, query, params, model=Expense)

    @staticmethod
    def pending_for_approver_clause(approver_id: uuid.UUID):
        """Active assignment for *approver_id* at a level the expense is still waiting on."""
        return or_(*[
            and_(
                Expense.status.in_([s.value for s in statuses]),
                Expense.id.in_(
                    select(PendingApprover.expense_id).where(
                        PendingApprover.approver_id == approver_id,
                        PendingApprover.level == level,
                        PendingApprover.status.in_(ACTIVE_PENDING_STATUSES),
                    )
                ),
            )
            for level, statuses in ACTIONABLE_STATUSES.items()
        ])

    @staticmethod
    async def list_pending_for_approver(
        db: AsyncSession,
        user: User,
        params: PaginationParams,
    ) -> tuple[list[Expense], PaginationMeta]:
        query = (
            select(Expense)
            .where(
                Expense.is_deleted.is_(False),
                ExpenseService.pending_for_approver_clause(user.id),
            )
            .order_by(Expense.submission_date.asc(), Expense.created_at.asc())
        )
        return await paginate(db, query, params, model=Expense)

    @staticmethod
    async def list_ready_for_payment(
        db: AsyncSession,
        params: PaginationParams,
        *,
        site_id: Optional[uuid.UUID] = None,
    ) -> tuple[list[Expense], PaginationMeta]:
        query = select(Expense).where(
            Expense.status == READY_FOR_PAYMENT_STATUS.value,
            Expense.is_deleted.is_(False),
        )
        if site_id:
            query = query.where(Expense.site_id == site_id)
        query = query.order_by(Expense.updated_at.asc())
        return await paginate(db, query, params, model=Expense)

    @staticmethod
    async def history(db: AsyncSession, expense_id: uuid.UUID) -> list[ApprovalHistory]:
        result = await db.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.expense_id == expense_id)
            .order_by(ApprovalHistory.created_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def approvers(
        db: AsyncSession,
        expense_id: uuid.UUID,
        *,
        active_only: bool = False,
    ) -> list[PendingApprover]:
        query = select(PendingApprover).where(PendingApprover.expense_id == expense_id)
        if active_only:
            query = query.where(PendingApprover.status.in_(ACTIVE_PENDING_STATUSES))
        result = await db.execute(
            query.order_by(PendingApprover.level.asc(), PendingApprover.assigned_date.asc())
        )
        return list(result.scalars().all())

    # ── Update ────────────────────────────────────────────────────────

    @staticmethod
    async def attach_receipt(
        db: AsyncSession,
        expense: Expense,
        user: User,
        *,
        content: bytes,
        stored_path: str,
    ) -> Expense:
        """Record a receipt on a draft; its SHA-256 feeds duplicate detection."""
        if expense.submitted_by != user.id:
            raise ForbiddenException("Only the submitter can attach receipts.")
        if expense.status != ExpenseStatus.draft.value:
            raise InvalidStateError(
                "Receipts can only be attached to draft expenses.", expense.status,
            )
        if not content:
            raise ValidationException({"file": ["Receipt file is empty."]})

        expense.receipt_hash = compute_receipt_hash(content)
        expense.receipt_path = stored_path
        await db.flush()

        await create_audit_entry(
            db,
            action="attach_receipt",
            entity_type="expense",
            entity_id=expense.id,
            actor_id=user.id,
            new_values={"receipt_hash": expense.receipt_hash},
        )
        return expense

    @staticmethod
    async def soft_delete(db: AsyncSession, expense: Expense, user: User) -> None:
        if expense.submitted_by != user.id:
            raise ForbiddenException("Only the submitter can delete this expense.")
        if expense.status not in DELETABLE_STATUSES:
            raise InvalidStateError(
                f"Expense in status '{expense.status}' cannot be deleted.", expense.status,
            )

        expense.is_deleted = True
        expense.is_active = False
        expense.deleted_at = datetime.now(timezone.utc)
        expense.deleted_by = user.id
        await db.flush()

        await create_audit_entry(
            db,
            action="delete",
            entity_type="expense",
            entity_id=expense.id,
            actor_id=user.id,
            old_values={"status": expense.status},
        )
        logger.info("Expense %s deleted by %s", expense.expense_number, user.id)
