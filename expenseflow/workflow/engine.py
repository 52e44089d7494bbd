"""Approval workflow engine — the expense status state machine.

Owns status transitions, the pending-approver set and the approval history.
Every operation runs inside the caller's transaction: it validates, mutates
through the repository, flushes, and returns the resulting events. Nothing
here commits, and nothing here talks to the notification channel.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence


from expenseflow.budget.ledger import BudgetLedger
from expenseflow.common.constants import (
    ACTIONABLE_STATUSES,
    CANCELLABLE_STATUSES,
    LEVEL_APPROVED_STATUSES,
    LEVEL_APPROVER_ROLES,
    MAX_APPROVAL_LEVEL,
    READY_FOR_PAYMENT_STATUS,
    ApprovalAction,
    ExpenseCategory,
    ExpenseStatus,
    UserRole,
    has_permission,
)
from expenseflow.common.exceptions import (
    DuplicateNumberError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundException,
    ValidationException,
)
from expenseflow.config import settings
from expenseflow.policy.evaluator import ExpenseCandidate, SitePolicy, evaluate_expense
from expenseflow.workflow.events import Actor, EventKind, WorkflowEvent, WorkflowOutcome
from expenseflow.workflow.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def _snapshot(expense: Any) -> dict[str, Any]:
    """JSON-safe subset of an expense for audit entries."""
    return {
        "status": expense.status,
        "amount": str(expense.amount) if expense.amount is not None else None,
        "current_approval_level": expense.current_approval_level,
        "required_approval_level": expense.required_approval_level,
    }


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationException({field: ["Must be a number."]})
    if amount <= 0:
        raise ValidationException({field: ["Must be greater than zero."]})
    return amount


class ApprovalWorkflowEngine:
    """Drives an expense from draft to payment through up to three levels."""

    def __init__(
        self,
        repo: WorkflowRepository,
        *,
        relevel_on_amount_increase: Optional[bool] = None,
        geo_distance_limit_km: Optional[float] = None,
    ) -> None:
        self.repo = repo
        self.relevel_on_amount_increase = (
            settings.RELEVEL_ON_AMOUNT_INCREASE
            if relevel_on_amount_increase is None else relevel_on_amount_increase
        )
        self.geo_distance_limit_km = (
            settings.GEO_DISTANCE_LIMIT_KM
            if geo_distance_limit_km is None else geo_distance_limit_km
        )

    # ── Helpers ─────────────────────────────────────────────────────

    async def _load(self, expense_id: uuid.UUID):
        expense = await self.repo.get_expense(expense_id)
        if expense is None:
            raise NotFoundException("Expense", expense_id)
        return expense

    async def _approvers_for_level(self, level: int, site_id: uuid.UUID) -> Sequence[Any]:
        """L1 and L2 pools are site-scoped; L3 approvers act across sites."""
        if level == MAX_APPROVAL_LEVEL:
            return await self.repo.get_active_l3_approvers()
        return await self.repo.get_active_approvers_for_site(site_id, LEVEL_APPROVER_ROLES[level])

    async def _fan_out(self, expense: Any, level: int) -> tuple[uuid.UUID, ...]:
        approvers = await self._approvers_for_level(level, expense.site_id)
        if not approvers:
            raise InvalidStateError(
                f"No active level-{level} approvers are available for expense "
                f"{expense.expense_number}.",
                expense.status,
            )
        for approver in approvers:
            await self.repo.create_pending_approver(expense.id, approver.id, level)
        logger.info(
            "Assigned expense %s to %d level-%d approver(s)",
            expense.expense_number, len(approvers), level,
        )
        return tuple(a.id for a in approvers)

    async def _finance_ids(self) -> tuple[uuid.UUID, ...]:
        return tuple(u.id for u in await self.repo.get_active_finance_users())

    @staticmethod
    def _validate_for_submission(expense: Any) -> None:
        errors: dict[str, list[str]] = {}
        if not (expense.title or "").strip():
            errors["title"] = ["Title is required."]
        if expense.amount is None or Decimal(str(expense.amount)) <= 0:
            errors["amount"] = ["Amount must be greater than zero."]
        try:
            ExpenseCategory(expense.category)
        except ValueError:
            errors["category"] = [f"Unknown category '{expense.category}'."]
        if expense.expense_date is None:
            errors["expense_date"] = ["Expense date is required."]
        elif expense.expense_date > date.today():
            errors["expense_date"] = ["Expense date cannot be in the future."]
        if expense.category == ExpenseCategory.vehicle_km.value:
            total_km = (expense.vehicle_km or {}).get("total_km")
            if not total_km or Decimal(str(total_km)) <= 0:
                errors["vehicle_km.total_km"] = ["Distance travelled is required."]
        if errors:
            raise ValidationException(errors)

    def _check_actionable(self, expense: Any, level: int) -> None:
        if level not in ACTIONABLE_STATUSES:
            raise ValidationException({"level": [f"Level must be between 1 and {MAX_APPROVAL_LEVEL}."]})
        if ExpenseStatus(expense.status) not in ACTIONABLE_STATUSES[level]:
            raise InvalidStateError(
                f"Expense {expense.expense_number} is '{expense.status}' and cannot be "
                f"actioned at level {level}.",
                expense.status,
            )

    async def _check_assigned(self, expense: Any, actor: Actor, level: int) -> None:
        if actor.approval_level != level:
            raise NotAuthorizedError(
                f"Role '{actor.role.value}' cannot act at approval level {level}.",
            )
        rows = await self.repo.list_pending_approvers(expense.id, level=level)
        if not any(row.approver_id == actor.id for row in rows):
            raise NotAuthorizedError(
                f"You are not an assigned level-{level} approver for expense "
                f"{expense.expense_number}.",
            )

    # ── submit ──────────────────────────────────────────────────────

    async def submit(self, expense_id: uuid.UUID, actor: Actor) -> WorkflowOutcome:
        """Move a draft into the approval ladder (or straight to approved)."""
        expense = await self._load(expense_id)
        if expense.status != ExpenseStatus.draft.value:
            raise InvalidStateError(
                f"Only draft expenses can be submitted; {expense.expense_number} is "
                f"'{expense.status}'.",
                expense.status,
            )
        if expense.submitted_by != actor.id:
            raise NotAuthorizedError("Only the submitter can submit this expense.")

        self._validate_for_submission(expense)
        if await self.repo.expense_number_taken(expense.expense_number, exclude_id=expense.id):
            raise DuplicateNumberError(expense.expense_number)

        site = await self.repo.get_site(expense.site_id)
        if site is None:
            raise NotFoundException("Site", expense.site_id)

        old = _snapshot(expense)
        verdict = await evaluate_expense(
            ExpenseCandidate.from_expense(expense),
            SitePolicy.from_site(site, geo_distance_limit_km=self.geo_distance_limit_km),
            self.repo.duplicate_lookup(),
        )
        required = BudgetLedger.required_level(site, expense.amount)

        expense.policy_flags = list(verdict.flags)
        expense.risk_score = verdict.risk_score
        expense.normalized_key = verdict.normalized_key
        expense.required_approval_level = required
        expense.current_approval_level = 0
        expense.submission_date = date.today()

        if required == 0 and not verdict.escalate:
            expense.status = ExpenseStatus.approved.value
            recipients = await self._finance_ids()
            level = 0
        else:
            expense.status = (
                ExpenseStatus.under_review.value if verdict.escalate
                else ExpenseStatus.submitted.value
            )
            level = 1
            recipients = await self._fan_out(expense, level)

        await self.repo.save_expense(expense)
        await self.repo.record_audit(
            action="submit", expense=expense, actor_id=actor.id,
            old_values=old, new_values=_snapshot(expense) | {"policy_flags": expense.policy_flags},
        )
        logger.info(
            "Expense %s submitted: status=%s required_level=%d risk=%d",
            expense.expense_number, expense.status, required, verdict.risk_score,
        )
        event = WorkflowEvent.for_expense(
            EventKind.submission_created, expense,
            level=level, actor_id=actor.id, recipient_ids=recipients,
        )
        return WorkflowOutcome(expense, [event])

    # ── approve ─────────────────────────────────────────────────────

    async def approve(
        self,
        expense_id: uuid.UUID,
        actor: Actor,
        level: int,
        comments: Optional[str] = None,
        modified_amount: Optional[Any] = None,
        modification_reason: Optional[str] = None,
    ) -> WorkflowOutcome:
        """Clear *level* for the expense; any one assigned approver suffices."""
        expense = await self._load(expense_id)
        self._check_actionable(expense, level)
        await self._check_assigned(expense, actor, level)

        old = _snapshot(expense)
        amount_before = expense.amount
        revised: Optional[Decimal] = None
        if modified_amount is not None:
            revised = _to_decimal(modified_amount, "modified_amount")
            if revised == Decimal(str(expense.amount)):
                revised = None
            elif not (modification_reason or "").strip():
                raise ValidationException(
                    {"modification_reason": ["A reason is required when changing the amount."]}
                )

        await self.repo.append_approval_history(
            expense_id=expense.id,
            approver_id=actor.id,
            level=level,
            action=ApprovalAction.approved.value,
            comments=comments,
            amount=amount_before,
            modified_amount=revised,
            modification_reason=modification_reason if revised is not None else None,
        )

        if revised is not None:
            if expense.original_amount is None:
                expense.original_amount = amount_before
            expense.amount = revised
            expense.modification_reason = modification_reason
            logger.info(
                "Expense %s amount revised at level %d: %s -> %s",
                expense.expense_number, level, amount_before, revised,
            )
            if self.relevel_on_amount_increase:
                site = await self.repo.get_site(expense.site_id)
                if site is not None:
                    relevelled = BudgetLedger.required_level(site, revised)
                    if relevelled > expense.required_approval_level:
                        expense.required_approval_level = relevelled

        expense.current_approval_level = max(expense.current_approval_level, level)
        await self.repo.retire_pending_approvers(expense.id, level=level, completed_by=actor.id)

        if expense.current_approval_level >= expense.required_approval_level:
            expense.status = ExpenseStatus.approved.value
            recipients = await self._finance_ids()
        else:
            expense.status = LEVEL_APPROVED_STATUSES[level].value
            recipients = await self._fan_out(expense, level + 1)

        await self.repo.save_expense(expense)
        await self.repo.record_audit(
            action="approve", expense=expense, actor_id=actor.id,
            old_values=old, new_values=_snapshot(expense),
        )
        logger.info(
            "Expense %s approved at level %d by %s: status=%s",
            expense.expense_number, level, actor.id, expense.status,
        )
        event = WorkflowEvent.for_expense(
            EventKind.level_approved, expense,
            level=level, actor_id=actor.id, recipient_ids=recipients, comments=comments,
        )
        return WorkflowOutcome(expense, [event])

    # ── reject ──────────────────────────────────────────────────────

    async def reject(
        self,
        expense_id: uuid.UUID,
        actor: Actor,
        level: int,
        comments: str,
    ) -> WorkflowOutcome:
        """Terminal rejection; every outstanding assignment is withdrawn."""
        expense = await self._load(expense_id)
        self._check_actionable(expense, level)
        await self._check_assigned(expense, actor, level)
        if not (comments or "").strip():
            raise ValidationException({"comments": ["A rejection reason is required."]})

        old = _snapshot(expense)
        await self.repo.append_approval_history(
            expense_id=expense.id,
            approver_id=actor.id,
            level=level,
            action=ApprovalAction.rejected.value,
            comments=comments,
            amount=expense.amount,
        )
        await self.repo.retire_pending_approvers(expense.id, completed_by=actor.id)
        expense.status = ExpenseStatus.rejected.value

        await self.repo.save_expense(expense)
        await self.repo.record_audit(
            action="reject", expense=expense, actor_id=actor.id,
            old_values=old, new_values=_snapshot(expense),
        )
        logger.info(
            "Expense %s rejected at level %d by %s", expense.expense_number, level, actor.id,
        )
        event = WorkflowEvent.for_expense(
            EventKind.rejected, expense, level=level, actor_id=actor.id, comments=comments,
        )
        return WorkflowOutcome(expense, [event])

    # ── process_payment ─────────────────────────────────────────────

    async def process_payment(
        self,
        expense_id: uuid.UUID,
        actor: Actor,
        payment_amount: Optional[Any] = None,
        payment_date: Optional[date] = None,
        comments: Optional[str] = None,
    ) -> WorkflowOutcome:
        """Finance hand-off: mark paid and count the spend against the site once."""
        if actor.role != UserRole.finance:
            raise NotAuthorizedError("Only finance users can process payments.")

        expense = await self._load(expense_id)
        if expense.status == ExpenseStatus.payment_processed.value:
            logger.info("Payment for expense %s already processed, ignoring replay", expense.expense_number)
            return WorkflowOutcome(expense, [])
        if expense.status != READY_FOR_PAYMENT_STATUS.value:
            raise InvalidStateError(
                f"Expense {expense.expense_number} is '{expense.status}'; only "
                f"'{READY_FOR_PAYMENT_STATUS.value}' expenses can be paid.",
                expense.status,
            )

        amount = (
            _to_decimal(payment_amount, "payment_amount")
            if payment_amount is not None else Decimal(str(expense.amount))
        )
        old = _snapshot(expense)
        expense.status = ExpenseStatus.payment_processed.value
        expense.payment_amount = amount
        expense.payment_date = payment_date or date.today()
        expense.payment_processed_by = actor.id

        events: list[WorkflowEvent] = []
        site = await self.repo.get_site(expense.site_id)
        if site is None:
            raise NotFoundException("Site", expense.site_id)
        alert = await self.repo.apply_site_spend(site, expense)

        await self.repo.retire_pending_approvers(expense.id)
        await self.repo.append_approval_history(
            expense_id=expense.id,
            approver_id=actor.id,
            level=expense.current_approval_level,
            action=ApprovalAction.payment_processed.value,
            comments=comments,
            amount=expense.amount,
            payment_amount=amount,
            payment_date=expense.payment_date,
        )

        await self.repo.save_expense(expense)
        await self.repo.record_audit(
            action="pay", expense=expense, actor_id=actor.id,
            old_values=old, new_values=_snapshot(expense) | {"payment_amount": str(amount)},
        )
        logger.info(
            "Payment of %s processed for expense %s by %s",
            amount, expense.expense_number, actor.id,
        )
        events.append(WorkflowEvent.for_expense(
            EventKind.payment_processed, expense, actor_id=actor.id, comments=comments,
        ))
        if alert is not None:
            recipients = [u.id for u in await self.repo.get_active_l3_approvers()]
            recipients += [uid for uid in await self._finance_ids() if uid not in recipients]
            events.append(WorkflowEvent(
                kind=EventKind.budget_alert,
                expense_id=expense.id,
                expense_number=expense.expense_number,
                site_id=site.id,
                actor_id=actor.id,
                recipient_ids=tuple(recipients),
                budget_alert=alert,
            ))
        return WorkflowOutcome(expense, events)

    # ── cancel ──────────────────────────────────────────────────────

    async def cancel(
        self,
        expense_id: uuid.UUID,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> WorkflowOutcome:
        """Withdraw an expense before payment (owner, or an L3 override)."""
        expense = await self._load(expense_id)
        if ExpenseStatus(expense.status) not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Expense {expense.expense_number} is '{expense.status}' and can no "
                f"longer be cancelled.",
                expense.status,
            )
        if expense.submitted_by != actor.id and not has_permission(actor.role, "expense:cancel_any"):
            raise NotAuthorizedError("Only the submitter or an L3 approver can cancel this expense.")

        old = _snapshot(expense)
        active = await self.repo.list_pending_approvers(expense.id)
        notified = tuple(dict.fromkeys(row.approver_id for row in active))
        await self.repo.retire_pending_approvers(expense.id)

        text = f"Expense cancelled: {reason}" if reason else "Expense cancelled."
        await self.repo.add_comment(expense.id, actor.id, text, is_internal=True)
        await self.repo.append_approval_history(
            expense_id=expense.id,
            approver_id=actor.id,
            level=expense.current_approval_level,
            action=ApprovalAction.cancelled.value,
            comments=reason,
            amount=expense.amount,
        )
        expense.status = ExpenseStatus.cancelled.value

        await self.repo.save_expense(expense)
        await self.repo.record_audit(
            action="cancel", expense=expense, actor_id=actor.id,
            old_values=old, new_values=_snapshot(expense),
        )
        logger.info("Expense %s cancelled by %s", expense.expense_number, actor.id)
        event = WorkflowEvent.for_expense(
            EventKind.cancelled, expense,
            actor_id=actor.id, recipient_ids=notified, comments=reason,
        )
        return WorkflowOutcome(expense, [event])
