"""Sites Pydantic v2 schemas — request/response validation."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from expenseflow.common.constants import BudgetStatus


class SiteCreate(BaseModel):
    """Create a site. Threshold ordering is checked by the budget ledger."""

    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=10)
    description: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    monthly_budget: Decimal = Field(Decimal("0"), ge=0)
    yearly_budget: Decimal = Field(Decimal("0"), ge=0)
    category_budgets: Dict[str, Decimal] = Field(default_factory=dict)
    alert_threshold: int = Field(80, ge=0, le=100)

    auto_approval_limit: Decimal = Field(Decimal("500"), ge=0)
    l1_threshold: Decimal = Field(Decimal("1000"), ge=0)
    l2_threshold: Decimal = Field(Decimal("5000"), ge=0)
    l3_threshold: Decimal = Field(Decimal("10000"), ge=0)

    vehicle_km_limit: int = Field(1000, ge=0)
    max_expense_amount: Decimal = Field(Decimal("50000"), ge=0)
    duplicate_window_days: int = Field(30, ge=1, le=365)
    per_category_limits: Dict[str, Decimal] = Field(default_factory=dict)
    cash_max: Optional[Decimal] = Field(Decimal("2000"), ge=0)
    director_escalation_thresholds: Dict[str, Decimal] = Field(default_factory=dict)
    weekend_disallowed_categories: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v: str) -> str:
        return v.strip().upper()


class ThresholdUpdate(BaseModel):
    """Partial update of the approval ladder."""

    auto_approval_limit: Optional[Decimal] = Field(None, ge=0)
    l1_threshold: Optional[Decimal] = Field(None, ge=0)
    l2_threshold: Optional[Decimal] = Field(None, ge=0)
    l3_threshold: Optional[Decimal] = Field(None, ge=0)


class SiteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    code: str
    description: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    monthly_budget: Decimal
    yearly_budget: Decimal
    category_budgets: Dict[str, Decimal] = {}
    alert_threshold: int
    auto_approval_limit: Decimal
    l1_threshold: Decimal
    l2_threshold: Decimal
    l3_threshold: Decimal
    vehicle_km_limit: int
    max_expense_amount: Optional[Decimal] = None
    duplicate_window_days: int
    per_category_limits: Dict[str, Decimal] = {}
    cash_max: Optional[Decimal] = None
    director_escalation_thresholds: Dict[str, Decimal] = {}
    weekend_disallowed_categories: List[str] = []
    monthly_spend: Decimal
    yearly_spend: Decimal
    total_expenses: int
    total_amount: Decimal
    last_expense_date: Optional[date] = None
    is_active: bool
    created_at: Optional[datetime] = None


class CategorySpend(BaseModel):
    category: str
    count: int
    amount: Decimal


class BudgetOverviewOut(BaseModel):
    site_id: uuid.UUID
    monthly_budget: Decimal
    monthly_spend: Decimal
    yearly_budget: Decimal
    yearly_spend: Decimal
    remaining: Decimal
    utilization: int
    alert_threshold: int
    status: BudgetStatus
    categories: List[CategorySpend] = []


class BudgetAlertOut(BaseModel):
    site_id: uuid.UUID
    code: str
    name: str
    monthly_budget: Decimal
    monthly_spend: Decimal
    remaining: Decimal
    utilization: int
    alert_threshold: int
    status: BudgetStatus
    category_budgets: Dict[str, Decimal] = {}
