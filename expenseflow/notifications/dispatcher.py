"""Notification dispatcher — turns committed workflow events into in-app notifications.

Runs after the workflow transaction has committed (FastAPI background task),
in its own session. A delivery failure is logged and never reaches the
request that produced the event.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.constants import NotificationType
from expenseflow.database import async_session_factory
from expenseflow.notifications.service import NotificationService
from expenseflow.workflow.events import EventKind, WorkflowEvent

logger = logging.getLogger(__name__)


def _label(event: WorkflowEvent) -> str:
    return f"{event.expense_number} '{event.title}'" if event.title else str(event.expense_number)


def _action_url(event: WorkflowEvent) -> Optional[str]:
    return f"/expenses/{event.expense_id}" if event.expense_id else None


class NotificationDispatcher:
    """Writes one notification per recipient per event."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self.session_factory = session_factory

    async def dispatch(self, events: Iterable[WorkflowEvent]) -> int:
        """Deliver *events*; returns the number of notifications written."""
        events = list(events)
        if not events:
            return 0
        try:
            async with self.session_factory() as session:
                written = 0
                for event in events:
                    written += await self._deliver(session, event)
                await session.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to deliver notifications for %d workflow event(s)", len(events),
            )
            return 0
        logger.debug("Delivered %d notification(s) for %d event(s)", written, len(events))
        return written

    async def _deliver(self, session: AsyncSession, event: WorkflowEvent) -> int:
        is_budget = event.kind == EventKind.budget_alert
        rows = await NotificationService.create_many(
            session,
            self._render(event),
            action_url=_action_url(event),
            entity_type="site" if is_budget else "expense",
            entity_id=event.site_id if is_budget else event.expense_id,
        )
        return len(rows)

    @staticmethod
    def _render(event: WorkflowEvent) -> list[tuple[uuid.UUID, NotificationType, str, str]]:
        label = _label(event)
        out: list[tuple[uuid.UUID, NotificationType, str, str]] = []

        def to_recipients(type_: NotificationType, title: str, message: str) -> None:
            for rid in event.recipient_ids:
                out.append((rid, type_, title, message))

        def to_submitter(type_: NotificationType, title: str, message: str) -> None:
            if event.submitted_by is not None:
                out.append((event.submitted_by, type_, title, message))

        if event.kind == EventKind.submission_created:
            if event.level:
                to_recipients(
                    NotificationType.action_required,
                    "Expense Awaiting Approval",
                    f"Expense {label} for {event.amount} requires your level-{event.level} approval.",
                )
                to_submitter(
                    NotificationType.info,
                    "Expense Submitted",
                    f"Your expense {label} was submitted for approval.",
                )
            else:
                to_recipients(
                    NotificationType.action_required,
                    "Expense Ready for Payment",
                    f"Expense {label} for {event.amount} was auto-approved and is ready for payment.",
                )
                to_submitter(
                    NotificationType.approval,
                    "Expense Auto-Approved",
                    f"Your expense {label} was approved automatically.",
                )

        elif event.kind == EventKind.level_approved:
            if event.status == "approved":
                to_recipients(
                    NotificationType.action_required,
                    "Expense Ready for Payment",
                    f"Expense {label} for {event.amount} is fully approved and ready for payment.",
                )
                to_submitter(
                    NotificationType.approval,
                    "Expense Approved",
                    f"Your expense {label} has been fully approved.",
                )
            else:
                next_level = (event.level or 0) + 1
                to_recipients(
                    NotificationType.action_required,
                    "Expense Awaiting Approval",
                    f"Expense {label} for {event.amount} requires your level-{next_level} approval.",
                )
                to_submitter(
                    NotificationType.approval,
                    f"Expense Approved at Level {event.level}",
                    f"Your expense {label} was approved at level {event.level}.",
                )

        elif event.kind == EventKind.rejected:
            to_submitter(
                NotificationType.alert,
                "Expense Rejected",
                f"Your expense {label} was rejected at level {event.level}. "
                f"Reason: {event.comments}",
            )

        elif event.kind == EventKind.payment_processed:
            to_submitter(
                NotificationType.approval,
                "Payment Processed",
                f"Payment for your expense {label} has been processed.",
            )

        elif event.kind == EventKind.cancelled:
            to_recipients(
                NotificationType.info,
                "Expense Cancelled",
                f"Expense {label} was cancelled and no longer needs your approval.",
            )
            if event.actor_id != event.submitted_by:
                to_submitter(
                    NotificationType.alert,
                    "Expense Cancelled",
                    f"Your expense {label} was cancelled.",
                )

        elif event.kind == EventKind.budget_alert and event.budget_alert is not None:
            alert = event.budget_alert
            to_recipients(
                NotificationType.alert,
                "Site Budget Alert",
                f"Site {alert.site_name} has used {alert.utilization}% of its monthly "
                f"budget ({alert.monthly_spend} of {alert.monthly_budget}).",
            )

        return out


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency; tests override it to point at their own session factory."""
    return NotificationDispatcher(async_session_factory)
