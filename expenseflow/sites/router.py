"""Sites router — site setup, approval thresholds, budget overview and alerts."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.auth.dependencies import get_current_user, require_permission
from expenseflow.database import get_db
from expenseflow.sites.schemas import (
    BudgetAlertOut,
    BudgetOverviewOut,
    SiteCreate,
    SiteOut,
    ThresholdUpdate,
)
from expenseflow.sites.service import SiteService
from expenseflow.users.models import User

router = APIRouter(prefix="", tags=["sites"])


# ── POST / ───────────────────────────────────────────────────────────

@router.post("/", response_model=SiteOut, status_code=201)
async def create_site(
    body: SiteCreate,
    user: User = Depends(require_permission("site:manage")),
    db: AsyncSession = Depends(get_db),
):
    site = await SiteService.create_site(db, body, user.id)
    await db.commit()
    return SiteOut.model_validate(site)


# ── GET / ────────────────────────────────────────────────────────────

@router.get("/", response_model=list[SiteOut])
async def list_sites(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return [SiteOut.model_validate(s) for s in await SiteService.list_sites(db)]


# ── GET /budget-alerts ──────────────────────────────────────────────

@router.get("/budget-alerts", response_model=list[BudgetAlertOut])
async def budget_alerts(
    user: User = Depends(require_permission("budget:read")),
    db: AsyncSession = Depends(get_db),
):
    """Sites at or over their budget alert threshold this month."""
    return await SiteService.budget_alerts(db)


# ── GET /{site_id} ───────────────────────────────────────────────────

@router.get("/{site_id}", response_model=SiteOut)
async def get_site(
    site_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return SiteOut.model_validate(await SiteService.get_site(db, site_id))


# ── PATCH /{site_id}/thresholds ──────────────────────────────────────

@router.patch("/{site_id}/thresholds", response_model=SiteOut)
async def update_thresholds(
    site_id: uuid.UUID,
    body: ThresholdUpdate,
    user: User = Depends(require_permission("site:manage")),
    db: AsyncSession = Depends(get_db),
):
    """Change the approval ladder; rejects any update that breaks auto < L1 < L2 < L3."""
    site = await SiteService.get_site(db, site_id)
    site = await SiteService.update_thresholds(db, site, body, user.id)
    await db.commit()
    return SiteOut.model_validate(site)


# ── GET /{site_id}/budget ────────────────────────────────────────────

@router.get("/{site_id}/budget", response_model=BudgetOverviewOut)
async def budget_overview(
    site_id: uuid.UUID,
    user: User = Depends(require_permission("budget:read")),
    db: AsyncSession = Depends(get_db),
):
    site = await SiteService.get_site(db, site_id)
    return await SiteService.budget_overview(db, site)
