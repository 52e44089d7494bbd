"""Workflow value types: acting identity, transition events, operation outcome."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from expenseflow.budget.ledger import BudgetAlert
from expenseflow.common.constants import UserRole, approval_level_for


@dataclass(frozen=True)
class Actor:
    """Pre-resolved identity of whoever is driving a transition."""

    id: uuid.UUID
    role: UserRole
    site_id: Optional[uuid.UUID] = None

    @property
    def approval_level(self) -> int:
        return approval_level_for(self.role)


class EventKind(str, enum.Enum):
    submission_created = "SubmissionCreated"
    level_approved = "LevelApproved"
    rejected = "Rejected"
    payment_processed = "PaymentProcessed"
    cancelled = "Cancelled"
    budget_alert = "BudgetAlert"


@dataclass(frozen=True)
class WorkflowEvent:
    """Structured transition record consumed by the notification dispatcher.

    ``recipient_ids`` holds the users who now have something to act on
    (next-level approvers, finance); the submitter is always informed
    separately via ``submitted_by``.
    """

    kind: EventKind
    expense_id: Optional[uuid.UUID]
    expense_number: Optional[str] = None
    title: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    level: Optional[int] = None
    actor_id: Optional[uuid.UUID] = None
    submitted_by: Optional[uuid.UUID] = None
    site_id: Optional[uuid.UUID] = None
    recipient_ids: tuple[uuid.UUID, ...] = ()
    comments: Optional[str] = None
    budget_alert: Optional[BudgetAlert] = None

    @classmethod
    def for_expense(cls, kind: EventKind, expense: Any, **extra: Any) -> "WorkflowEvent":
        return cls(
            kind=kind,
            expense_id=expense.id,
            expense_number=expense.expense_number,
            title=expense.title,
            amount=expense.amount,
            status=expense.status,
            submitted_by=expense.submitted_by,
            site_id=expense.site_id,
            **extra,
        )


@dataclass
class WorkflowOutcome:
    expense: Any
    events: list[WorkflowEvent] = field(default_factory=list)
