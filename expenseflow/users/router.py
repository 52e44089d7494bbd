"""Users router — account administration for L3 approvers and finance."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.auth.dependencies import require_permission
from expenseflow.common.constants import UserRole
from expenseflow.common.pagination import PaginationParams
from expenseflow.database import get_db
from expenseflow.users.models import User
from expenseflow.users.schemas import RoleUpdate, UserCreate, UserListResponse, UserOut
from expenseflow.users.service import UserService

router = APIRouter(prefix="", tags=["users"])

_admin_dep = require_permission("user:manage")


# ── POST / ───────────────────────────────────────────────────────────

@router.post("/", response_model=UserOut, status_code=201)
async def create_user(
    body: UserCreate,
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    """Create an account; every role except l3_approver and finance needs a site."""
    user = await UserService.create_user(db, body, admin.id)
    await db.commit()
    return UserOut.model_validate(user)


# ── GET / ────────────────────────────────────────────────────────────

@router.get("/", response_model=UserListResponse)
async def list_users(
    role: Optional[UserRole] = Query(None),
    site_id: Optional[uuid.UUID] = Query(None),
    include_inactive: bool = Query(False),
    params: PaginationParams = Depends(),
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    rows, meta = await UserService.list_users(
        db, params, role=role, site_id=site_id, include_inactive=include_inactive,
    )
    return UserListResponse(data=[UserOut.model_validate(u) for u in rows], meta=meta)


# ── GET /role/{role} ─────────────────────────────────────────────────

@router.get("/role/{role}", response_model=list[UserOut])
async def list_by_role(
    role: UserRole,
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    return [UserOut.model_validate(u) for u in await UserService.list_by_role(db, role)]


# ── GET /{user_id} ───────────────────────────────────────────────────

@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: uuid.UUID,
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    return UserOut.model_validate(await UserService.get_user(db, user_id))


# ── PUT /{user_id}/role ──────────────────────────────────────────────

@router.put("/{user_id}/role", response_model=UserOut)
async def change_role(
    user_id: uuid.UUID,
    body: RoleUpdate,
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    user = await UserService.get_user(db, user_id)
    user = await UserService.change_role(db, user, body, admin.id)
    await db.commit()
    return UserOut.model_validate(user)


# ── PUT /{user_id}/deactivate ────────────────────────────────────────

@router.put("/{user_id}/deactivate", response_model=UserOut)
async def deactivate_user(
    user_id: uuid.UUID,
    admin: User = Depends(_admin_dep),
    db: AsyncSession = Depends(get_db),
):
    user = await UserService.get_user(db, user_id)
    user = await UserService.deactivate(db, user, admin.id)
    await db.commit()
    return UserOut.model_validate(user)
