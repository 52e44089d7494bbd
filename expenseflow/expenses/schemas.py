"""Expenses Pydantic v2 schemas — request/response validation."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from expenseflow.common.constants import Currency, ExpenseCategory
from expenseflow.common.pagination import PaginationMeta


# ═════════════════════════════════════════════════════════════════════
# Embedded
# ═════════════════════════════════════════════════════════════════════


class VehicleKmDetails(BaseModel):
    start_km: Optional[Decimal] = Field(None, ge=0)
    end_km: Optional[Decimal] = Field(None, ge=0)
    total_km: Optional[Decimal] = Field(None, ge=0)
    rate_per_km: Decimal = Field(Decimal("10"), gt=0)
    vehicle_number: Optional[str] = Field(None, max_length=20)
    purpose: Optional[str] = Field(None, max_length=200)
    exceeds_limit: bool = False
    exceed_reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def _derive_total(self) -> "VehicleKmDetails":
        if self.start_km is not None and self.end_km is not None:
            if self.end_km < self.start_km:
                raise ValueError("end_km must not be less than start_km")
            if self.total_km is None:
                self.total_km = self.end_km - self.start_km
        return self


class TravelDetails(BaseModel):
    from_location: Optional[str] = Field(None, alias="from", max_length=100)
    to_location: Optional[str] = Field(None, alias="to", max_length=100)
    travel_date: Optional[date] = None
    return_date: Optional[date] = None
    mode: Optional[str] = Field(None, max_length=30)
    booking_reference: Optional[str] = Field(None, max_length=50)

    model_config = ConfigDict(populate_by_name=True)


class AccommodationDetails(BaseModel):
    hotel_name: Optional[str] = Field(None, max_length=100)
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    location: Optional[str] = Field(None, max_length=200)


# ═════════════════════════════════════════════════════════════════════
# Expense
# ═════════════════════════════════════════════════════════════════════


class ExpenseCreate(BaseModel):
    """Create a new draft expense. Amount is derived for Vehicle KM claims."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    currency: Currency = Currency.inr
    category: ExpenseCategory
    payment_method: Optional[str] = Field(None, max_length=30)
    expense_date: date
    department: Optional[str] = Field(None, max_length=100)
    expense_number: Optional[str] = Field(None, max_length=30)
    site_id: Optional[uuid.UUID] = None
    vehicle_km: Optional[VehicleKmDetails] = None
    travel: Optional[TravelDetails] = None
    accommodation: Optional[AccommodationDetails] = None
    location_lat: Optional[float] = Field(None, ge=-90, le=90)
    location_lng: Optional[float] = Field(None, ge=-180, le=180)
    location_city: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def _amount_or_distance(self) -> "ExpenseCreate":
        if self.category == ExpenseCategory.vehicle_km:
            if self.vehicle_km is None or self.vehicle_km.total_km is None:
                raise ValueError("vehicle_km with a distance is required for Vehicle KM expenses")
        elif self.amount is None:
            raise ValueError("amount is required")
        return self


class ExpenseOut(BaseModel):
    """Full expense representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    expense_number: str
    title: str
    description: Optional[str] = None
    department: Optional[str] = None
    amount: Decimal
    currency: str
    category: str
    payment_method: Optional[str] = None
    expense_date: date
    vehicle_km: Optional[dict] = None
    travel: Optional[dict] = None
    accommodation: Optional[dict] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_city: Optional[str] = None
    submitted_by: uuid.UUID
    site_id: uuid.UUID
    status: str
    current_approval_level: int
    required_approval_level: int
    submission_date: Optional[date] = None
    policy_flags: List[str] = []
    risk_score: int = 0
    receipt_hash: Optional[str] = None
    original_amount: Optional[Decimal] = None
    modification_reason: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_date: Optional[date] = None
    payment_processed_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExpenseListResponse(BaseModel):
    data: List[ExpenseOut]
    meta: PaginationMeta


class NextNumberOut(BaseModel):
    expense_number: str


# ═════════════════════════════════════════════════════════════════════
# Workflow actions
# ═════════════════════════════════════════════════════════════════════


class ExpenseApproveRequest(BaseModel):
    level: int = Field(..., ge=1, le=3)
    comments: Optional[str] = Field(None, max_length=1000)
    modified_amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    modification_reason: Optional[str] = Field(None, max_length=500)


class ExpenseRejectRequest(BaseModel):
    level: int = Field(..., ge=1, le=3)
    comments: str = Field(..., min_length=1, max_length=1000)


class ExpensePaymentRequest(BaseModel):
    payment_amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    payment_date: Optional[date] = None
    comments: Optional[str] = Field(None, max_length=1000)


class ExpenseCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ═════════════════════════════════════════════════════════════════════
# History / assignments
# ═════════════════════════════════════════════════════════════════════


class ApprovalHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    approver_id: uuid.UUID
    level: int
    action: str
    comments: Optional[str] = None
    amount: Optional[Decimal] = None
    modified_amount: Optional[Decimal] = None
    modification_reason: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_date: Optional[date] = None
    created_at: datetime


class PendingApproverOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    approver_id: uuid.UUID
    level: int
    status: str
    assigned_date: datetime
    completed_at: Optional[datetime] = None


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    action: str
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    created_at: datetime
