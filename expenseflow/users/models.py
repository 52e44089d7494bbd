"""Users ORM model.

Permissions are not stored on the row; they are resolved from the role via
``expenseflow.common.constants.PERMISSIONS`` whenever they are checked.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expenseflow.common.constants import UserRole, approval_level_for
from expenseflow.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    email: Mapped[str] = mapped_column(sa.String(200), unique=True, nullable=False)
    employee_id: Mapped[Optional[str]] = mapped_column(sa.String(50), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(sa.String(20))
    role: Mapped[str] = mapped_column(
        sa.String(30), nullable=False, default=UserRole.submitter.value,
    )
    # NULL only for cross-site roles (l3_approver, finance); see ck_users_site_required
    site_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("sites.id"), nullable=True,
    )
    department: Mapped[Optional[str]] = mapped_column(sa.String(100))
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    site = relationship("Site", foreign_keys=[site_id], lazy="selectin")

    __table_args__ = (
        sa.Index("ix_users_site_role", "site_id", "role", "is_active"),
        sa.CheckConstraint(
            "role IN ('l3_approver', 'finance') OR site_id IS NOT NULL",
            name="ck_users_site_required",
        ),
    )

    @property
    def approval_level(self) -> int:
        return approval_level_for(self.role)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"
