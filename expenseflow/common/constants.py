"""Enums and constants for ExpenseFlow — stored as plain strings in PostgreSQL."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    submitter = "submitter"
    l1_approver = "l1_approver"
    l2_approver = "l2_approver"
    l3_approver = "l3_approver"
    finance = "finance"


# Approval level each role may act at. Finance runs the payment step and
# holds no approval level.
ROLE_APPROVAL_LEVELS: dict[UserRole, int] = {
    UserRole.submitter: 0,
    UserRole.l1_approver: 1,
    UserRole.l2_approver: 2,
    UserRole.l3_approver: 3,
    UserRole.finance: 0,
}

LEVEL_APPROVER_ROLES: dict[int, UserRole] = {
    1: UserRole.l1_approver,
    2: UserRole.l2_approver,
    3: UserRole.l3_approver,
}

MAX_APPROVAL_LEVEL = 3


# ── Expenses ────────────────────────────────────────────────────────

class ExpenseStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    under_review = "under_review"
    approved_l1 = "approved_l1"
    approved_l2 = "approved_l2"
    approved_l3 = "approved_l3"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"
    payment_processed = "payment_processed"
    reimbursed = "reimbursed"
    refunded = "refunded"
    reserved = "reserved"


class ExpenseCategory(str, enum.Enum):
    travel = "Travel"
    food = "Food"
    accommodation = "Accommodation"
    vehicle_km = "Vehicle KM"
    fuel = "Fuel"
    equipment = "Equipment"
    maintenance = "Maintenance"
    office_supplies = "Office Supplies"
    miscellaneous = "Miscellaneous"


class Currency(str, enum.Enum):
    inr = "INR"
    usd = "USD"
    eur = "EUR"
    gbp = "GBP"


# Status an expense must be in for an approver to act at a given level
ACTIONABLE_STATUSES: dict[int, frozenset[ExpenseStatus]] = {
    1: frozenset({ExpenseStatus.submitted, ExpenseStatus.under_review}),
    2: frozenset({ExpenseStatus.approved_l1}),
    3: frozenset({ExpenseStatus.approved_l2}),
}

LEVEL_APPROVED_STATUSES: dict[int, ExpenseStatus] = {
    1: ExpenseStatus.approved_l1,
    2: ExpenseStatus.approved_l2,
    3: ExpenseStatus.approved_l3,
}

IN_APPROVAL_STATUSES: frozenset[ExpenseStatus] = frozenset({
    ExpenseStatus.submitted,
    ExpenseStatus.under_review,
    ExpenseStatus.approved_l1,
    ExpenseStatus.approved_l2,
    ExpenseStatus.approved_l3,
})

CANCELLABLE_STATUSES: frozenset[ExpenseStatus] = IN_APPROVAL_STATUSES | {
    ExpenseStatus.draft,
    ExpenseStatus.approved,
}

# Canonical finance hand-off status
READY_FOR_PAYMENT_STATUS = ExpenseStatus.approved

# Statuses whose amount counts towards site spend
SPEND_COUNTED_STATUSES: frozenset[ExpenseStatus] = frozenset({
    ExpenseStatus.payment_processed,
    ExpenseStatus.reimbursed,
})


class PendingApproverStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


ACTIVE_PENDING_STATUSES: tuple[str, ...] = (
    PendingApproverStatus.pending.value,
    PendingApproverStatus.in_progress.value,
)


class ApprovalAction(str, enum.Enum):
    approved = "approved"
    rejected = "rejected"
    payment_processed = "payment_processed"
    cancelled = "cancelled"


# ── Policy ──────────────────────────────────────────────────────────

class PolicyFlag(str, enum.Enum):
    duplicate_receipt = "DUPLICATE_RECEIPT"
    soft_duplicate = "SOFT_DUPLICATE"
    cash_over_cap = "CASH_OVER_CAP"
    suspect = "SUSPECT"
    director_escalation = "DIRECTOR_ESCALATION"
    location_mismatch = "LOCATION_MISMATCH"
    distance_exceeded = "DISTANCE_EXCEEDED"
    duplicate_check_skipped = "DUPLICATE_CHECK_SKIPPED"
    receipt_missing = "RECEIPT_MISSING"


OVER_LIMIT_FLAG_PREFIX = "OVER_LIMIT_"


class NextAction(str, enum.Enum):
    normal = "NORMAL"
    escalate = "ESCALATE"


class BudgetStatus(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    exceeded = "exceeded"


# ── Dashboard ───────────────────────────────────────────────────────

class StatsPeriod(str, enum.Enum):
    week = "week"
    month = "month"
    quarter = "quarter"
    year = "year"


# Pending approvals waiting longer than this are reported as overdue
OVERDUE_APPROVAL_DAYS = 7


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    alert = "alert"


# ── Role-based permissions ──────────────────────────────────────────
# Resolved at check time; never copied onto user rows.

PERMISSIONS: dict[UserRole, frozenset[str]] = {
    UserRole.submitter: frozenset({
        "expense:create",
        "expense:read_own",
        "notification:read_own",
    }),
    UserRole.l1_approver: frozenset({
        "expense:create",
        "expense:read_own",
        "expense:read_site",
        "expense:approve",
        "report:view",
        "notification:read_own",
    }),
    UserRole.l2_approver: frozenset({
        "expense:create",
        "expense:read_own",
        "expense:read_site",
        "expense:approve",
        "report:view",
        "budget:read",
        "notification:read_own",
    }),
    UserRole.l3_approver: frozenset({
        "expense:create",
        "expense:read_own",
        "expense:read_all",
        "expense:approve",
        "expense:cancel_any",
        "report:view",
        "budget:read",
        "site:manage",
        "user:manage",
        "notification:read_own",
    }),
    UserRole.finance: frozenset({
        "expense:read_all",
        "expense:process_payment",
        "report:view",
        "budget:read",
        "user:manage",
        "notification:read_own",
    }),
}


def approval_level_for(role: UserRole | str) -> int:
    """Return the approval level a role may act at (0 = none)."""
    return ROLE_APPROVAL_LEVELS[UserRole(role)]


def has_permission(role: UserRole | str, permission: str) -> bool:
    return permission in PERMISSIONS.get(UserRole(role), frozenset())


# ── Misc constants ──────────────────────────────────────────────────

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
EXPENSE_NUMBER_WIDTH = 4
