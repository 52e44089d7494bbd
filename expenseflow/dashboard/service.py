"""Dashboard service — read-only aggregation queries over expenses, sites
and approvals.

All methods are static async. Counts and sums run as GROUP BY / CASE
aggregates in the database; nothing here writes.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.budget.ledger import BudgetLedger
from expenseflow.common.constants import (
    IN_APPROVAL_STATUSES,
    OVERDUE_APPROVAL_DAYS,
    SPEND_COUNTED_STATUSES,
    ApprovalAction,
    ExpenseStatus,
    StatsPeriod,
    has_permission,
)
from expenseflow.dashboard.schemas import (
    ApprovalStats,
    CategoryStats,
    DashboardOverviewResponse,
    ExpenseStatsResponse,
    PendingApprovalItem,
    PendingApprovalsResponse,
    PendingApprovalsSummary,
    SiteBudgetSummary,
    StatusBreakdown,
    UserExpenseStats,
)
from expenseflow.expenses.models import ApprovalHistory, Expense
from expenseflow.expenses.service import ExpenseService
from expenseflow.notifications.service import NotificationService
from expenseflow.sites.models import Site
from expenseflow.sites.service import SiteService
from expenseflow.users.models import User


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def period_start(period: StatsPeriod, today: date) -> date:
    """First day covered by *period*; ``week`` is a rolling seven days."""
    if period == StatsPeriod.week:
        return today - timedelta(days=7)
    if period == StatsPeriod.month:
        return today.replace(day=1)
    if period == StatsPeriod.quarter:
        return today.replace(month=(today.month - 1) // 3 * 3 + 1, day=1)
    return today.replace(month=1, day=1)


class DashboardService:
    """Async dashboard aggregation queries."""

    # ═════════════════════════════════════════════════════════════════
    # GET /overview
    # ═════════════════════════════════════════════════════════════════

    @staticmethod
    async def get_overview(db: AsyncSession, user: User) -> DashboardOverviewResponse:
        """Own-expense totals for everyone, plus role-specific panels."""
        overview = DashboardOverviewResponse(
            user_stats=await DashboardService._user_stats(db, user.id),
            unread_notifications=await NotificationService.get_unread_count(db, user.id),
        )

        if user.site_id is not None:
            site = await db.get(Site, user.site_id)
            if site is not None:
                overview.site_budget = SiteBudgetSummary(
                    site_id=site.id,
                    monthly_budget=site.monthly_budget,
                    monthly_spend=site.monthly_spend,
                    remaining=BudgetLedger.remaining(site),
                    utilization=BudgetLedger.utilization(site),
                    status=BudgetLedger.budget_status(site),
                    vehicle_km_limit=site.vehicle_km_limit,
                )

        if user.approval_level > 0:
            pending = await db.execute(
                select(func.count(Expense.id)).where(
                    Expense.is_deleted.is_(False),
                    ExpenseService.pending_for_approver_clause(user.id),
                )
            )
            overview.pending_approvals = pending.scalar_one()
            overview.approval_stats = await DashboardService._approval_stats(db, user.id)

        if has_permission(user.role, "site:manage"):
            overview.budget_alerts = await SiteService.budget_alerts(db)

        return overview

    @staticmethod
    async def _user_stats(db: AsyncSession, user_id: uuid.UUID) -> UserExpenseStats:
        pending = [s.value for s in IN_APPROVAL_STATUSES]
        paid = [s.value for s in SPEND_COUNTED_STATUSES]
        result = await db.execute(
            select(
                func.count(Expense.id),
                func.coalesce(func.sum(Expense.amount), 0),
                _count_where(Expense.status.in_(pending)),
                _count_where(Expense.status == ExpenseStatus.approved.value),
                _count_where(Expense.status == ExpenseStatus.rejected.value),
                _count_where(Expense.status.in_(paid)),
            ).where(
                Expense.submitted_by == user_id,
                Expense.is_active.is_(True),
                Expense.is_deleted.is_(False),
            )
        )
        total, amount, pending_n, approved_n, rejected_n, paid_n = result.one()
        return UserExpenseStats(
            total_expenses=total,
            total_amount=_dec(amount),
            pending_expenses=pending_n,
            approved_expenses=approved_n,
            rejected_expenses=rejected_n,
            paid_expenses=paid_n,
        )

    @staticmethod
    async def _approval_stats(db: AsyncSession, user_id: uuid.UUID) -> ApprovalStats:
        result = await db.execute(
            select(
                func.count(ApprovalHistory.id),
                _count_where(ApprovalHistory.action == ApprovalAction.approved.value),
                _count_where(ApprovalHistory.action == ApprovalAction.rejected.value),
            ).where(ApprovalHistory.approver_id == user_id)
        )
        total, approved_n, rejected_n = result.one()
        return ApprovalStats(
            total_actions=total, approved_count=approved_n, rejected_count=rejected_n,
        )

    # ═════════════════════════════════════════════════════════════════
    # GET /expense-stats
    # ═════════════════════════════════════════════════════════════════

    @staticmethod
    async def get_expense_stats(
        db: AsyncSession,
        user: User,
        *,
        period: StatsPeriod = StatsPeriod.month,
        category: Optional[str] = None,
        site_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> ExpenseStatsResponse:
        """Count and amount per category and status within *period*.

        Cross-site readers see everything (optionally one site), site
        reviewers see their site, everyone else sees their own expenses.
        """
        today = today or date.today()
        start = period_start(period, today)

        query = select(
            Expense.category,
            Expense.status,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.amount), 0),
        ).where(
            Expense.is_active.is_(True),
            Expense.is_deleted.is_(False),
            Expense.expense_date >= start,
            Expense.expense_date <= today,
        )
        if has_permission(user.role, "expense:read_all"):
            if site_id is not None:
                query = query.where(Expense.site_id == site_id)
        elif has_permission(user.role, "expense:read_site"):
            query = query.where(Expense.site_id == user.site_id)
        else:
            query = query.where(Expense.submitted_by == user.id)
        if category:
            query = query.where(Expense.category == category)

        result = await db.execute(
            query.group_by(Expense.category, Expense.status)
            .order_by(Expense.category, Expense.status)
        )

        by_category: dict[str, CategoryStats] = {}
        for cat, status, count, amount in result.all():
            stats = by_category.setdefault(
                cat, CategoryStats(category=cat, total_count=0, total_amount=Decimal("0")),
            )
            stats.statuses.append(StatusBreakdown(status=status, count=count, amount=_dec(amount)))
            stats.total_count += count
            stats.total_amount += _dec(amount)

        categories = list(by_category.values())
        return ExpenseStatsResponse(
            period=period,
            start_date=start,
            total_count=sum(c.total_count for c in categories),
            total_amount=sum((c.total_amount for c in categories), Decimal("0")),
            categories=categories,
        )

    # ═════════════════════════════════════════════════════════════════
    # GET /pending-approvals
    # ═════════════════════════════════════════════════════════════════

    @staticmethod
    async def get_pending_approvals(
        db: AsyncSession,
        user: User,
        *,
        today: Optional[date] = None,
    ) -> PendingApprovalsResponse:
        """Everything waiting on *user*, oldest submission first."""
        today = today or date.today()
        result = await db.execute(
            select(Expense)
            .where(
                Expense.is_deleted.is_(False),
                ExpenseService.pending_for_approver_clause(user.id),
            )
            .order_by(Expense.submission_date.asc(), Expense.created_at.asc())
        )

        items: list[PendingApprovalItem] = []
        for expense in result.scalars().all():
            site = await db.get(Site, expense.site_id)
            waiting = (today - expense.submission_date).days if expense.submission_date else 0
            items.append(PendingApprovalItem(
                expense_id=expense.id,
                expense_number=expense.expense_number,
                title=expense.title,
                amount=expense.amount,
                category=expense.category,
                status=expense.status,
                site_id=expense.site_id,
                submitted_by=expense.submitted_by,
                submission_date=expense.submission_date,
                days_waiting=waiting,
                overdue=waiting > OVERDUE_APPROVAL_DAYS,
                within_budget=site is None or BudgetLedger.is_within_budget(site, expense.amount),
            ))

        return PendingApprovalsResponse(
            summary=PendingApprovalsSummary(
                total=len(items),
                total_amount=sum((i.amount for i in items), Decimal("0")),
                overdue=sum(1 for i in items if i.overdue),
            ),
            expenses=items,
        )
