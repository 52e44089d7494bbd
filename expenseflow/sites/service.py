"""Sites service layer — site setup, threshold ladder, budget overview."""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.budget.ledger import BudgetLedger
from expenseflow.common.audit import create_audit_entry
from expenseflow.common.constants import SPEND_COUNTED_STATUSES
from expenseflow.common.exceptions import ConflictError, NotFoundException
from expenseflow.expenses.models import Expense
from expenseflow.sites.models import Site
from expenseflow.sites.schemas import (
    BudgetAlertOut,
    BudgetOverviewOut,
    CategorySpend,
    SiteCreate,
    ThresholdUpdate,
)

logger = logging.getLogger(__name__)

THRESHOLD_FIELDS = ("auto_approval_limit", "l1_threshold", "l2_threshold", "l3_threshold")


def _json_map(values: dict) -> dict:
    return {k: str(v) for k, v in values.items()}


class SiteService:

    @staticmethod
    async def code_taken(db: AsyncSession, code: str) -> bool:
        result = await db.execute(select(Site.id).where(Site.code == code))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def create_site(
        db: AsyncSession,
        body: SiteCreate,
        actor_id: uuid.UUID,
    ) -> Site:
        BudgetLedger.validate_thresholds(
            body.auto_approval_limit, body.l1_threshold, body.l2_threshold, body.l3_threshold,
        )
        if await SiteService.code_taken(db, body.code):
            raise ConflictError("code", body.code)

        data = body.model_dump()
        for key in ("category_budgets", "per_category_limits", "director_escalation_thresholds"):
            data[key] = _json_map(data[key])
        site = Site(
            **data,
            monthly_spend=Decimal("0"),
            yearly_spend=Decimal("0"),
            total_expenses=0,
            total_amount=Decimal("0"),
            is_active=True,
            created_by=actor_id,
        )
        db.add(site)
        try:
            await db.flush()
        except IntegrityError as exc:
            await db.rollback()
            if "code" in str(exc.orig):
                raise ConflictError("code", body.code)
            raise

        await create_audit_entry(
            db,
            action="create",
            entity_type="site",
            entity_id=site.id,
            actor_id=actor_id,
            new_values={"code": site.code, "name": site.name},
        )
        logger.info("Site %s created by %s", site.code, actor_id)
        return site

    @staticmethod
    async def get_site(db: AsyncSession, site_id: uuid.UUID) -> Site:
        site = await db.get(Site, site_id)
        if site is None:
            raise NotFoundException("Site", site_id)
        return site

    @staticmethod
    async def list_sites(db: AsyncSession, *, include_inactive: bool = False) -> list[Site]:
        query = select(Site).order_by(Site.code)
        if not include_inactive:
            query = query.where(Site.is_active.is_(True))
        return list((await db.execute(query)).scalars().all())

    @staticmethod
    async def update_thresholds(
        db: AsyncSession,
        site: Site,
        body: ThresholdUpdate,
        actor_id: uuid.UUID,
    ) -> Site:
        """Apply a partial ladder update; the merged ladder must stay ordered."""
        changes = body.model_dump(exclude_unset=True, exclude_none=True)
        merged = {f: changes.get(f, getattr(site, f)) for f in THRESHOLD_FIELDS}
        BudgetLedger.validate_thresholds(*(merged[f] for f in THRESHOLD_FIELDS))

        old_values = {f: str(getattr(site, f)) for f in THRESHOLD_FIELDS}
        for field, value in changes.items():
            setattr(site, field, value)
        await db.flush()

        await create_audit_entry(
            db,
            action="update_thresholds",
            entity_type="site",
            entity_id=site.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={f: str(v) for f, v in changes.items()},
        )
        return site

    @staticmethod
    async def budget_overview(
        db: AsyncSession,
        site: Site,
        *,
        today: date | None = None,
    ) -> BudgetOverviewOut:
        """Ledger figures plus this month's paid spend per category."""
        today = today or date.today()
        month_start = today.replace(day=1)
        paid = func.coalesce(Expense.payment_amount, Expense.amount)
        result = await db.execute(
            select(
                Expense.category,
                func.count(Expense.id),
                func.coalesce(func.sum(paid), 0),
            )
            .where(
                Expense.site_id == site.id,
                Expense.status.in_([s.value for s in SPEND_COUNTED_STATUSES]),
                Expense.is_deleted.is_(False),
                Expense.payment_date >= month_start,
                Expense.payment_date <= today,
            )
            .group_by(Expense.category)
            .order_by(Expense.category)
        )
        categories = [
            CategorySpend(category=cat, count=count, amount=Decimal(str(amount)))
            for cat, count, amount in result.all()
        ]
        return BudgetOverviewOut(
            site_id=site.id,
            monthly_budget=site.monthly_budget,
            monthly_spend=site.monthly_spend,
            yearly_budget=site.yearly_budget,
            yearly_spend=site.yearly_spend,
            remaining=BudgetLedger.remaining(site),
            utilization=BudgetLedger.utilization(site),
            alert_threshold=site.alert_threshold,
            status=BudgetLedger.budget_status(site),
            categories=categories,
        )

    @staticmethod
    async def budget_alerts(db: AsyncSession) -> list[BudgetAlertOut]:
        """Active sites whose monthly spend has reached their alert threshold, worst first."""
        alerts = [
            BudgetAlertOut(
                site_id=site.id,
                code=site.code,
                name=site.name,
                monthly_budget=site.monthly_budget,
                monthly_spend=site.monthly_spend,
                remaining=BudgetLedger.remaining(site),
                utilization=BudgetLedger.utilization(site),
                alert_threshold=site.alert_threshold,
                status=BudgetLedger.budget_status(site),
                category_budgets=site.category_budgets or {},
            )
            for site in await SiteService.list_sites(db)
            if BudgetLedger.should_alert(site)
        ]
        alerts.sort(key=lambda a: (-a.utilization, a.code))
        return alerts
