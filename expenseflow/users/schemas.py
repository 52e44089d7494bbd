"""Users Pydantic v2 schemas — account setup, role changes, listings."""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from expenseflow.common.constants import UserRole
from expenseflow.common.pagination import PaginationMeta


class UserCreate(BaseModel):
    """Create an account. The site may be given by id or by code."""

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    employee_id: Optional[str] = Field(None, max_length=50)
    phone: Optional[str] = Field(None, max_length=20)
    department: Optional[str] = Field(None, max_length=100)
    role: UserRole = UserRole.submitter
    site_id: Optional[uuid.UUID] = None
    site_code: Optional[str] = Field(None, max_length=10)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("site_code")
    @classmethod
    def _upper_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v


class RoleUpdate(BaseModel):
    """Move a user to another role; ``site_id`` is needed when the new role is site-bound."""

    role: UserRole
    site_id: Optional[uuid.UUID] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str
    employee_id: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[str] = None
    role: UserRole
    site_id: Optional[uuid.UUID] = None
    is_active: bool
    approval_level: int
    created_at: Optional[datetime] = None


class UserListResponse(BaseModel):
    data: List[UserOut]
    meta: PaginationMeta
