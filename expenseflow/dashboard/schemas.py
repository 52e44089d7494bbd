"""Dashboard Pydantic v2 schemas — response models for the dashboard endpoints."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from expenseflow.common.constants import BudgetStatus, StatsPeriod
from expenseflow.sites.schemas import BudgetAlertOut


# ═════════════════════════════════════════════════════════════════════
# GET /overview
# ═════════════════════════════════════════════════════════════════════


class UserExpenseStats(BaseModel):
    """The caller's own expenses, all time."""

    total_expenses: int = 0
    total_amount: Decimal = Decimal("0")
    pending_expenses: int = Field(0, description="Still somewhere on the approval ladder")
    approved_expenses: int = Field(0, description="Fully approved, awaiting payment")
    rejected_expenses: int = 0
    paid_expenses: int = 0


class SiteBudgetSummary(BaseModel):
    site_id: uuid.UUID
    monthly_budget: Decimal
    monthly_spend: Decimal
    remaining: Decimal
    utilization: int
    status: BudgetStatus
    vehicle_km_limit: Optional[int] = None


class ApprovalStats(BaseModel):
    """Actions the caller has recorded as an approver."""

    total_actions: int = 0
    approved_count: int = 0
    rejected_count: int = 0


class DashboardOverviewResponse(BaseModel):
    user_stats: UserExpenseStats
    site_budget: Optional[SiteBudgetSummary] = None
    pending_approvals: Optional[int] = Field(
        None, description="Expenses waiting on the caller; approvers only",
    )
    approval_stats: Optional[ApprovalStats] = None
    budget_alerts: Optional[list[BudgetAlertOut]] = Field(
        None, description="Sites over their alert threshold; site managers only",
    )
    unread_notifications: int = 0


# ═════════════════════════════════════════════════════════════════════
# GET /expense-stats
# ═════════════════════════════════════════════════════════════════════


class StatusBreakdown(BaseModel):
    status: str
    count: int
    amount: Decimal


class CategoryStats(BaseModel):
    category: str
    total_count: int
    total_amount: Decimal
    statuses: list[StatusBreakdown] = Field(default_factory=list)


class ExpenseStatsResponse(BaseModel):
    period: StatsPeriod
    start_date: date
    total_count: int = 0
    total_amount: Decimal = Decimal("0")
    categories: list[CategoryStats] = Field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════
# GET /pending-approvals
# ═════════════════════════════════════════════════════════════════════


class PendingApprovalItem(BaseModel):
    expense_id: uuid.UUID
    expense_number: str
    title: str
    amount: Decimal
    category: str
    status: str
    site_id: uuid.UUID
    submitted_by: uuid.UUID
    submission_date: Optional[date] = None
    days_waiting: int = 0
    overdue: bool = False
    within_budget: bool = Field(
        True, description="Paying this now keeps the site inside its monthly budget",
    )


class PendingApprovalsSummary(BaseModel):
    total: int = 0
    total_amount: Decimal = Decimal("0")
    overdue: int = 0


class PendingApprovalsResponse(BaseModel):
    summary: PendingApprovalsSummary
    expenses: list[PendingApprovalItem] = Field(default_factory=list)
