"""Common module — shared utilities for ExpenseFlow."""

from expenseflow.common.audit import AuditTrail, create_audit_entry, get_audit_trail
from expenseflow.common.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PERMISSIONS,
    ExpenseCategory,
    ExpenseStatus,
    NotificationType,
    UserRole,
)
from expenseflow.common.exceptions import (
    AppException,
    BudgetConfigError,
    ConflictError,
    DuplicateNumberError,
    ForbiddenException,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundException,
    ValidationException,
    register_exception_handlers,
)
from expenseflow.common.pagination import (
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    "get_audit_trail",
    # Constants / Enums
    "ExpenseCategory",
    "ExpenseStatus",
    "NotificationType",
    "UserRole",
    "PERMISSIONS",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "BudgetConfigError",
    "ConflictError",
    "DuplicateNumberError",
    "ForbiddenException",
    "InvalidStateError",
    "NotAuthorizedError",
    "NotFoundException",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
