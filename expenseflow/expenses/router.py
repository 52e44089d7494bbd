"""Expenses router — drafts, read models and the approval workflow endpoints.

All endpoints require authentication. Workflow endpoints commit first and
hand the resulting events to the notification dispatcher as a background task.
"""

import os
import uuid
from datetime import date
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.auth.dependencies import actor_from_user, get_current_user, require_permission
from expenseflow.common.audit import get_audit_trail
from expenseflow.common.constants import ExpenseCategory, ExpenseStatus
from expenseflow.common.pagination import PaginationParams
from expenseflow.common.rate_limit import RECEIPT_UPLOAD_LIMIT, limiter
from expenseflow.config import settings
from expenseflow.database import get_db
from expenseflow.expenses.schemas import (
    ApprovalHistoryOut,
    AuditEntryOut,
    ExpenseApproveRequest,
    ExpenseCancelRequest,
    ExpenseCreate,
    ExpenseListResponse,
    ExpenseOut,
    ExpensePaymentRequest,
    ExpenseRejectRequest,
    NextNumberOut,
    PendingApproverOut,
)
from expenseflow.expenses.service import ExpenseService
from expenseflow.notifications.dispatcher import NotificationDispatcher, get_dispatcher
from expenseflow.users.models import User
from expenseflow.workflow.engine import ApprovalWorkflowEngine
from expenseflow.workflow.events import WorkflowOutcome
from expenseflow.workflow.repository import SqlWorkflowRepository


router = APIRouter(prefix="", tags=["expenses"])

ALLOWED_RECEIPT_TYPES = {"image/jpeg", "image/png", "image/gif", "application/pdf"}


async def _finish(
    db: AsyncSession,
    outcome: WorkflowOutcome,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> ExpenseOut:
    """Commit the transition, then queue its notifications."""
    await db.commit()
    if outcome.events:
        background_tasks.add_task(dispatcher.dispatch, outcome.events)
    return ExpenseOut.model_validate(outcome.expense)


def _engine(db: AsyncSession) -> ApprovalWorkflowEngine:
    return ApprovalWorkflowEngine(SqlWorkflowRepository(db))


# ── POST / ───────────────────────────────────────────────────────────

@router.post("/", response_model=ExpenseOut, status_code=201)
async def create_expense(
    body: ExpenseCreate,
    user: User = Depends(require_permission("expense:create")),
    db: AsyncSession = Depends(get_db),
):
    """Create a draft expense."""
    expense = await ExpenseService.create_draft(db, user, body)
    await db.commit()
    return ExpenseOut.model_validate(expense)


# ── GET /next-number ─────────────────────────────────────────────────

@router.get("/next-number", response_model=NextNumberOut)
async def next_expense_number(
    user: User = Depends(require_permission("expense:create")),
    db: AsyncSession = Depends(get_db),
):
    """Preview the next sequential expense number."""
    return NextNumberOut(expense_number=await ExpenseService.next_number(db))


# ── GET / ────────────────────────────────────────────────────────────

@router.get("/", response_model=ExpenseListResponse)
async def list_expenses(
    status: Optional[ExpenseStatus] = Query(None),
    category: Optional[ExpenseCategory] = Query(None),
    site_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    mine: bool = Query(False, description="Only the caller's own expenses"),
    params: PaginationParams = Depends(),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List expenses visible to the caller."""
    rows, meta = await ExpenseService.list_expenses(
        db,
        user,
        params,
        status=status.value if status else None,
        category=category.value if category else None,
        site_id=site_id,
        from_date=from_date,
        to_date=to_date,
        mine=mine,
    )
    return ExpenseListResponse(data=[ExpenseOut.model_validate(e) for e in rows], meta=meta)


# ── GET /pending ─────────────────────────────────────────────────────

@router.get("/pending", response_model=ExpenseListResponse)
async def pending_expenses(
    params: PaginationParams = Depends(),
    user: User = Depends(require_permission("expense:approve")),
    db: AsyncSession = Depends(get_db),
):
    """Expenses waiting on the caller's approval."""
    rows, meta = await ExpenseService.list_pending_for_approver(db, user, params)
    return ExpenseListResponse(data=[ExpenseOut.model_validate(e) for e in rows], meta=meta)


# ── GET /ready-for-payment ───────────────────────────────────────────

@router.get("/ready-for-payment", response_model=ExpenseListResponse)
async def ready_for_payment(
    site_id: Optional[uuid.UUID] = Query(None),
    params: PaginationParams = Depends(),
    user: User = Depends(require_permission("expense:process_payment")),
    db: AsyncSession = Depends(get_db),
):
    """Fully approved expenses awaiting finance."""
    rows, meta = await ExpenseService.list_ready_for_payment(db, params, site_id=site_id)
    return ExpenseListResponse(data=[ExpenseOut.model_validate(e) for e in rows], meta=meta)


# ── GET /{expense_id} ────────────────────────────────────────────────

@router.get("/{expense_id}", response_model=ExpenseOut)
async def get_expense(
    expense_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    expense = await ExpenseService.get_expense(db, expense_id)
    await ExpenseService.ensure_can_view(db, user, expense)
    return ExpenseOut.model_validate(expense)


# ── GET /{expense_id}/history ────────────────────────────────────────

@router.get("/{expense_id}/history", response_model=list[ApprovalHistoryOut])
async def expense_history(
    expense_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approval history, oldest first."""
    expense = await ExpenseService.get_expense(db, expense_id)
    await ExpenseService.ensure_can_view(db, user, expense)
    rows = await ExpenseService.history(db, expense_id)
    return [ApprovalHistoryOut.model_validate(r) for r in rows]


# ── GET /{expense_id}/audit ──────────────────────────────────────────

@router.get("/{expense_id}/audit", response_model=list[AuditEntryOut])
async def expense_audit(
    expense_id: uuid.UUID,
    user: User = Depends(require_permission("report:view")),
    db: AsyncSession = Depends(get_db),
):
    """Audit rows for the expense, oldest first."""
    expense = await ExpenseService.get_expense(db, expense_id)
    await ExpenseService.ensure_can_view(db, user, expense)
    rows = await get_audit_trail(db, "expense", expense_id)
    return [AuditEntryOut.model_validate(r) for r in rows]


# ── GET /{expense_id}/approvers ──────────────────────────────────────

@router.get("/{expense_id}/approvers", response_model=list[PendingApproverOut])
async def expense_approvers(
    expense_id: uuid.UUID,
    active_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approver assignments for the expense (all levels)."""
    expense = await ExpenseService.get_expense(db, expense_id)
    await ExpenseService.ensure_can_view(db, user, expense)
    rows = await ExpenseService.approvers(db, expense_id, active_only=active_only)
    return [PendingApproverOut.model_validate(r) for r in rows]


# ── POST /{expense_id}/receipt ───────────────────────────────────────

@router.post("/{expense_id}/receipt", response_model=ExpenseOut)
@limiter.limit(RECEIPT_UPLOAD_LIMIT)
async def upload_receipt(
    request: Request,
    expense_id: uuid.UUID,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Attach a receipt to a draft expense."""
    if file.content_type not in ALLOWED_RECEIPT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"File type '{file.content_type}' not allowed. Accepted: JPEG, PNG, GIF, PDF.",
        )

    contents = await file.read()
    if len(contents) > settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {settings.MAX_UPLOAD_SIZE_MB} MB.",
        )

    expense = await ExpenseService.get_expense(db, expense_id)

    upload_dir = os.path.join(settings.UPLOAD_DIR, "receipts")
    os.makedirs(upload_dir, exist_ok=True)

    # UUID-only filename; the client's name never reaches the filesystem
    ext = os.path.splitext(file.filename or "")[1]
    safe_name = f"{uuid.uuid4().hex}{ext}"
    stored_path = os.path.join(upload_dir, safe_name)

    expense = await ExpenseService.attach_receipt(
        db, expense, user, content=contents, stored_path=stored_path,
    )
    with open(stored_path, "wb") as f:
        f.write(contents)
    try:
        await db.commit()
    except Exception:
        # No committed row points at the file
        os.remove(stored_path)
        raise
    return ExpenseOut.model_validate(expense)


# ── POST /{expense_id}/submit ────────────────────────────────────────

@router.post("/{expense_id}/submit", response_model=ExpenseOut)
async def submit_expense(
    expense_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("expense:create")),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Submit a draft into the approval workflow."""
    outcome = await _engine(db).submit(expense_id, actor_from_user(user))
    return await _finish(db, outcome, background_tasks, dispatcher)


# ── POST /{expense_id}/approve ───────────────────────────────────────

@router.post("/{expense_id}/approve", response_model=ExpenseOut)
async def approve_expense(
    expense_id: uuid.UUID,
    body: ExpenseApproveRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("expense:approve")),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Approve at the caller's level, optionally revising the amount."""
    outcome = await _engine(db).approve(
        expense_id,
        actor_from_user(user),
        body.level,
        comments=body.comments,
        modified_amount=body.modified_amount,
        modification_reason=body.modification_reason,
    )
    return await _finish(db, outcome, background_tasks, dispatcher)


# ── POST /{expense_id}/reject ────────────────────────────────────────

@router.post("/{expense_id}/reject", response_model=ExpenseOut)
async def reject_expense(
    expense_id: uuid.UUID,
    body: ExpenseRejectRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_permission("expense:approve")),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    outcome = await _engine(db).reject(
        expense_id, actor_from_user(user), body.level, body.comments,
    )
    return await _finish(db, outcome, background_tasks, dispatcher)


# ── POST /{expense_id}/pay ───────────────────────────────────────────

@router.post("/{expense_id}/pay", response_model=ExpenseOut)
async def pay_expense(
    expense_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    body: ExpensePaymentRequest = ExpensePaymentRequest(),
    user: User = Depends(require_permission("expense:process_payment")),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Record payment of a fully approved expense (finance only)."""
    outcome = await _engine(db).process_payment(
        expense_id,
        actor_from_user(user),
        payment_amount=body.payment_amount,
        payment_date=body.payment_date,
        comments=body.comments,
    )
    return await _finish(db, outcome, background_tasks, dispatcher)


# ── POST /{expense_id}/cancel ────────────────────────────────────────

@router.post("/{expense_id}/cancel", response_model=ExpenseOut)
async def cancel_expense(
    expense_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    body: ExpenseCancelRequest = ExpenseCancelRequest(),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    outcome = await _engine(db).cancel(expense_id, actor_from_user(user), body.reason)
    return await _finish(db, outcome, background_tasks, dispatcher)


# ── DELETE /{expense_id} ─────────────────────────────────────────────

@router.delete("/{expense_id}", status_code=204)
async def delete_expense(
    expense_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete a draft, cancelled or rejected expense."""
    expense = await ExpenseService.get_expense(db, expense_id)
    await ExpenseService.soft_delete(db, expense, user)
    await db.commit()
