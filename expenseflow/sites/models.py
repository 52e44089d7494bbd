"""Sites ORM model: location, budget, approval thresholds, policy, running totals."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from expenseflow.database import Base


class Site(Base):
    """A tenant / location boundary owning a budget and an approver pool."""

    __tablename__ = "sites"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    code: Mapped[str] = mapped_column(sa.String(10), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.String(500))
    city: Mapped[Optional[str]] = mapped_column(sa.String(100))
    state: Mapped[Optional[str]] = mapped_column(sa.String(100))
    latitude: Mapped[Optional[float]] = mapped_column(sa.Float)
    longitude: Mapped[Optional[float]] = mapped_column(sa.Float)

    # ── Budget ───────────────────────────────────────────────────────
    monthly_budget: Mapped[Decimal] = mapped_column(
        sa.Numeric(14, 2), nullable=False, default=0,
    )
    yearly_budget: Mapped[Decimal] = mapped_column(
        sa.Numeric(14, 2), nullable=False, default=0,
    )
    # {"Travel": 20000, "Food": 5000, ...}
    category_budgets: Mapped[dict] = mapped_column(JSONB, default=dict)
    alert_threshold: Mapped[int] = mapped_column(sa.Integer, default=80)

    # ── Approval threshold ladder (auto < L1 < L2 < L3) ─────────────
    auto_approval_limit: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), nullable=False, default=500,
    )
    l1_threshold: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), nullable=False, default=1000,
    )
    l2_threshold: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), nullable=False, default=5000,
    )
    l3_threshold: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), nullable=False, default=10000,
    )

    # ── Settings / policy ────────────────────────────────────────────
    vehicle_km_limit: Mapped[int] = mapped_column(sa.Integer, default=1000)
    max_expense_amount: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), default=50000,
    )
    require_receipt_above: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), default=100,
    )
    duplicate_window_days: Mapped[int] = mapped_column(sa.Integer, default=30)
    per_category_limits: Mapped[dict] = mapped_column(JSONB, default=dict)
    cash_max: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2), default=2000)
    director_escalation_thresholds: Mapped[dict] = mapped_column(JSONB, default=dict)
    weekend_disallowed_categories: Mapped[list] = mapped_column(JSONB, default=list)

    # ── Running statistics (mutated by the budget ledger) ────────────
    monthly_spend: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), default=0)
    yearly_spend: Mapped[Decimal] = mapped_column(sa.Numeric(14, 2), default=0)
    total_expenses: Mapped[int] = mapped_column(sa.Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(sa.Numeric(16, 2), default=0)
    last_expense_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    # "YYYY-MM" of the month a budget alert was last raised
    alert_period: Mapped[Optional[str]] = mapped_column(sa.String(7))

    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Site {self.code} '{self.name}'>"
