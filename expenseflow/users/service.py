"""Users service layer — account creation, role changes, deactivation."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.audit import create_audit_entry
from expenseflow.common.constants import UserRole
from expenseflow.common.exceptions import (
    ConflictError,
    NotFoundException,
    ValidationException,
)
from expenseflow.common.pagination import PaginationMeta, PaginationParams, paginate
from expenseflow.sites.models import Site
from expenseflow.users.models import User
from expenseflow.users.schemas import RoleUpdate, UserCreate

logger = logging.getLogger(__name__)

CROSS_SITE_ROLES = frozenset({UserRole.l3_approver, UserRole.finance})


class UserService:

    # ── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _check_site_rule(role: UserRole, site_id: Optional[uuid.UUID]) -> None:
        if site_id is None and role not in CROSS_SITE_ROLES:
            raise ValidationException(
                {"site_id": [f"A site is required for role '{role.value}'."]}
            )

    @staticmethod
    async def _resolve_site(
        db: AsyncSession,
        site_id: Optional[uuid.UUID],
        site_code: Optional[str] = None,
    ) -> Optional[uuid.UUID]:
        if site_id is not None:
            site = await db.get(Site, site_id)
            if site is None or not site.is_active:
                raise NotFoundException("Site", site_id)
            return site.id
        if site_code:
            result = await db.execute(
                select(Site.id).where(Site.code == site_code, Site.is_active.is_(True))
            )
            found = result.scalar_one_or_none()
            if found is None:
                raise NotFoundException("Site", site_code)
            return found
        return None

    @staticmethod
    async def _taken(db: AsyncSession, column, value) -> bool:
        result = await db.execute(select(User.id).where(column == value).limit(1))
        return result.scalar_one_or_none() is not None

    # ── Create ──────────────────────────────────────────────────────

    @staticmethod
    async def create_user(
        db: AsyncSession,
        body: UserCreate,
        actor_id: uuid.UUID,
    ) -> User:
        if await UserService._taken(db, User.email, body.email):
            raise ConflictError("email", body.email)
        if body.employee_id and await UserService._taken(db, User.employee_id, body.employee_id):
            raise ConflictError("employee_id", body.employee_id)

        site_id = await UserService._resolve_site(db, body.site_id, body.site_code)
        UserService._check_site_rule(body.role, site_id)

        user = User(
            name=body.name.strip(),
            email=body.email,
            employee_id=body.employee_id,
            phone=body.phone,
            department=body.department,
            role=body.role.value,
            site_id=site_id,
            is_active=True,
        )
        db.add(user)
        try:
            await db.flush()
        except IntegrityError as exc:
            await db.rollback()
            err = str(exc.orig)
            if "email" in err:
                raise ConflictError("email", body.email)
            if "employee_id" in err:
                raise ConflictError("employee_id", body.employee_id)
            raise

        await create_audit_entry(
            db,
            action="create",
            entity_type="user",
            entity_id=user.id,
            actor_id=actor_id,
            new_values={"email": user.email, "role": user.role, "site_id": site_id},
        )
        logger.info("User %s created with role %s by %s", user.email, user.role, actor_id)
        return user

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundException("User", user_id)
        return user

    @staticmethod
    async def list_users(
        db: AsyncSession,
        params: PaginationParams,
        *,
        role: Optional[UserRole] = None,
        site_id: Optional[uuid.UUID] = None,
        include_inactive: bool = False,
    ) -> tuple[list[User], PaginationMeta]:
        query = select(User)
        if not include_inactive:
            query = query.where(User.is_active.is_(True))
        if role is not None:
            query = query.where(User.role == role.value)
        if site_id is not None:
            query = query.where(User.site_id == site_id)
        query = query.order_by(User.name)
        return await paginate(db, query, params, model=User)

    @staticmethod
    async def list_by_role(db: AsyncSession, role: UserRole) -> list[User]:
        """Active users holding *role*, by name."""
        result = await db.execute(
            select(User)
            .where(User.role == role.value, User.is_active.is_(True))
            .order_by(User.name)
        )
        return list(result.scalars().all())

    # ── Update ──────────────────────────────────────────────────────

    @staticmethod
    async def change_role(
        db: AsyncSession,
        user: User,
        body: RoleUpdate,
        actor_id: uuid.UUID,
    ) -> User:
        """Apply a role (and optionally a site) change; the site rule must still hold."""
        site_id = user.site_id
        if body.site_id is not None:
            site_id = await UserService._resolve_site(db, body.site_id)
        UserService._check_site_rule(body.role, site_id)

        old_values = {"role": user.role, "site_id": user.site_id}
        user.role = body.role.value
        user.site_id = site_id
        await db.flush()

        await create_audit_entry(
            db,
            action="change_role",
            entity_type="user",
            entity_id=user.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={"role": user.role, "site_id": site_id},
        )
        logger.info("User %s role changed %s -> %s", user.email, old_values["role"], user.role)
        return user

    @staticmethod
    async def deactivate(db: AsyncSession, user: User, actor_id: uuid.UUID) -> User:
        """Deactivated users drop out of every approver pool and can no longer sign in."""
        if user.id == actor_id:
            raise ValidationException({"user_id": ["You cannot deactivate your own account."]})
        if not user.is_active:
            return user

        user.is_active = False
        await db.flush()

        await create_audit_entry(
            db,
            action="deactivate",
            entity_type="user",
            entity_id=user.id,
            actor_id=actor_id,
            old_values={"is_active": True},
            new_values={"is_active": False},
        )
        logger.info("User %s deactivated by %s", user.email, actor_id)
        return user
