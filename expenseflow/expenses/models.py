"""Expenses ORM models: Expense, PendingApprover, ApprovalHistory, ExpenseComment.

SQLAlchemy 2.0 async-compatible models. History and pending obligations live
in their own tables only; the expense row never embeds copies of them.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from expenseflow.common.constants import (
    Currency,
    ExpenseStatus,
    PendingApproverStatus,
)
from expenseflow.database import Base


class Expense(Base):
    """Expense claim moving through the L1 → L2 → L3 → payment ladder."""

    __tablename__ = "expenses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    expense_number: Mapped[str] = mapped_column(
        sa.String(30), unique=True, nullable=False,
    )
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.String(1000))
    department: Mapped[Optional[str]] = mapped_column(sa.String(100))
    amount: Mapped[Decimal] = mapped_column(
        sa.Numeric(12, 2), nullable=False, default=0,
    )
    currency: Mapped[str] = mapped_column(
        sa.String(3), nullable=False, default=Currency.inr.value,
    )
    category: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(sa.String(30))
    expense_date: Mapped[date] = mapped_column(sa.Date, nullable=False)

    # Category-specific detail blocks
    vehicle_km: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    travel: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    accommodation: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    location_lat: Mapped[Optional[float]] = mapped_column(sa.Float)
    location_lng: Mapped[Optional[float]] = mapped_column(sa.Float)
    location_city: Mapped[Optional[str]] = mapped_column(sa.String(100))

    submitted_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False,
    )
    site_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("sites.id"), nullable=False,
    )

    # ── Workflow ─────────────────────────────────────────────────────
    status: Mapped[str] = mapped_column(
        sa.String(30), nullable=False, default=ExpenseStatus.draft.value,
    )
    current_approval_level: Mapped[int] = mapped_column(
        sa.SmallInteger, nullable=False, default=0,
    )
    required_approval_level: Mapped[int] = mapped_column(
        sa.SmallInteger, nullable=False, default=1,
    )
    submission_date: Mapped[Optional[date]] = mapped_column(sa.Date)

    # ── Risk ─────────────────────────────────────────────────────────
    policy_flags: Mapped[list] = mapped_column(JSONB, default=list)
    risk_score: Mapped[int] = mapped_column(sa.Integer, default=0)
    receipt_hash: Mapped[Optional[str]] = mapped_column(sa.String(64))
    receipt_path: Mapped[Optional[str]] = mapped_column(sa.String(500))
    normalized_key: Mapped[Optional[str]] = mapped_column(sa.String(300))

    # ── Amount revision ──────────────────────────────────────────────
    original_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2))
    modification_reason: Mapped[Optional[str]] = mapped_column(sa.String(500))

    # ── Payment ──────────────────────────────────────────────────────
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2))
    payment_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    payment_processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True,
    )
    spend_applied: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )

    # ── Lifecycle ────────────────────────────────────────────────────
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(sa.Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    deleted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        sa.Index("ix_expenses_site_status", "site_id", "status"),
        sa.Index("ix_expenses_submitter_date", "submitted_by", "expense_date"),
        sa.Index("ix_expenses_receipt_hash", "receipt_hash"),
        sa.Index("ix_expenses_normalized_key", "normalized_key"),
    )

    def __repr__(self) -> str:
        return f"<Expense {self.expense_number} '{self.title[:30]}' {self.amount} [{self.status}]>"


class PendingApprover(Base):
    """One outstanding obligation: an approver may act on an expense at a level."""

    __tablename__ = "pending_approvers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    expense_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(20), nullable=False, default=PendingApproverStatus.pending.value,
    )
    assigned_date: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    __table_args__ = (
        sa.Index("ix_pending_approvers_expense_level", "expense_id", "level", "status"),
        sa.Index("ix_pending_approvers_approver_status", "approver_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<PendingApprover L{self.level} {self.approver_id} [{self.status}]>"


class ApprovalHistory(Base):
    """Append-only record of every approval-relevant action on an expense."""

    __tablename__ = "approval_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    expense_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(sa.SmallInteger, nullable=False)
    action: Mapped[str] = mapped_column(sa.String(30), nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(sa.String(1000))
    amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2))
    modified_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2))
    modification_reason: Mapped[Optional[str]] = mapped_column(sa.String(500))
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(12, 2))
    payment_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        sa.Index("ix_approval_history_expense", "expense_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ApprovalHistory {self.action} L{self.level} by {self.approver_id}>"


class ExpenseComment(Base):
    """Free-text comment thread on an expense; system comments are internal."""

    __tablename__ = "expense_comments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    expense_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False,
    )
    text: Mapped[str] = mapped_column(sa.String(1000), nullable=False)
    is_internal: Mapped[bool] = mapped_column(sa.Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
