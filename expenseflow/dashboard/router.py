"""Dashboard router — read-only endpoints for the dashboard widgets.

The overview and expense statistics are open to every signed-in user and
scoped by role inside the service; the pending-approvals panel is for
approvers only.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.auth.dependencies import get_current_user, require_permission
from expenseflow.common.constants import ExpenseCategory, StatsPeriod
from expenseflow.dashboard.schemas import (
    DashboardOverviewResponse,
    ExpenseStatsResponse,
    PendingApprovalsResponse,
)
from expenseflow.dashboard.service import DashboardService
from expenseflow.database import get_db
from expenseflow.users.models import User

router = APIRouter()


# ── GET /overview ───────────────────────────────────────────────────

@router.get("/overview", response_model=DashboardOverviewResponse)
async def dashboard_overview(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Own-expense totals, site budget, approver queue and, for site managers, budget alerts."""
    return await DashboardService.get_overview(db, user)


# ── GET /expense-stats ──────────────────────────────────────────────

@router.get("/expense-stats", response_model=ExpenseStatsResponse)
async def expense_stats(
    period: StatsPeriod = Query(StatsPeriod.month, description="week | month | quarter | year"),
    category: Optional[ExpenseCategory] = Query(None),
    site_id: Optional[uuid.UUID] = Query(None, description="Cross-site readers only"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Expense count and amount by category and status for the period."""
    return await DashboardService.get_expense_stats(
        db, user,
        period=period,
        category=category.value if category else None,
        site_id=site_id,
    )


# ── GET /pending-approvals ──────────────────────────────────────────

@router.get("/pending-approvals", response_model=PendingApprovalsResponse)
async def pending_approvals(
    user: User = Depends(require_permission("expense:approve")),
    db: AsyncSession = Depends(get_db),
):
    """The caller's approval queue with totals and overdue count."""
    return await DashboardService.get_pending_approvals(db, user)
