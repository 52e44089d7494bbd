"""Budget ledger test suite — threshold ladder, required levels, spend
application, monthly alerts and period resets.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.budget.ledger import BudgetLedger
from expenseflow.common.audit import AuditTrail
from expenseflow.common.constants import BudgetStatus
from expenseflow.common.exceptions import BudgetConfigError
from scripts.reset_budgets import reset_budgets
from tests.conftest import seed_site


def _site(**overrides) -> SimpleNamespace:
    data = dict(
        id=uuid.uuid4(),
        name="Pune Depot",
        auto_approval_limit=Decimal("500"),
        l1_threshold=Decimal("1000"),
        l2_threshold=Decimal("5000"),
        l3_threshold=Decimal("10000"),
        monthly_budget=Decimal("10000"),
        yearly_budget=Decimal("120000"),
        category_budgets={"Travel": Decimal("3000")},
        alert_threshold=80,
        monthly_spend=Decimal("0"),
        yearly_spend=Decimal("0"),
        total_expenses=0,
        total_amount=Decimal("0"),
        last_expense_date=None,
        alert_period=None,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def _expense(amount: str, payment_amount: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid.uuid4(),
        amount=Decimal(amount),
        payment_amount=Decimal(payment_amount) if payment_amount else None,
        spend_applied=False,
    )


# ═════════════════════════════════════════════════════════════════════
# THRESHOLDS
# ═════════════════════════════════════════════════════════════════════


class TestThresholds:

    def test_ordered_ladder_accepted(self):
        BudgetLedger.validate_thresholds(500, 1000, 5000, 10000)

    def test_equal_steps_rejected(self):
        with pytest.raises(BudgetConfigError) as exc_info:
            BudgetLedger.validate_thresholds(500, 500, 5000, 10000)
        assert "l1_threshold" in exc_info.value.errors
        assert exc_info.value.status_code == 422

    def test_every_broken_step_reported(self):
        with pytest.raises(BudgetConfigError) as exc_info:
            BudgetLedger.validate_thresholds(2000, 1000, 5000, 4000)
        assert set(exc_info.value.errors) == {"l1_threshold", "l3_threshold"}

    @pytest.mark.parametrize(
        "amount, level",
        [("300", 0), ("500", 0), ("500.01", 1), ("800", 1), ("1000", 1),
         ("4999", 2), ("5000", 2), ("7500", 3), ("25000", 3)],
    )
    def test_required_level(self, amount, level):
        assert BudgetLedger.required_level(_site(), Decimal(amount)) == level


# ═════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════


class TestQueries:

    def test_within_budget(self):
        site = _site(monthly_spend=Decimal("9000"))
        assert BudgetLedger.is_within_budget(site, Decimal("1000")) is True
        assert BudgetLedger.is_within_budget(site, Decimal("1000.01")) is False

    def test_category_budget(self):
        site = _site()
        assert BudgetLedger.is_within_budget(site, 500, "Travel", category_spend=Decimal("2600")) is False
        assert BudgetLedger.is_within_budget(site, 500, "Food", category_spend=Decimal("2600")) is True

    def test_utilization_and_status(self):
        site = _site(monthly_spend=Decimal("7995"))
        assert BudgetLedger.utilization(site) == 80
        assert BudgetLedger.budget_status(site) == BudgetStatus.warning
        assert BudgetLedger.remaining(site) == Decimal("2005")

        site.monthly_spend = Decimal("12000")
        assert BudgetLedger.budget_status(site) == BudgetStatus.exceeded
        assert BudgetLedger.remaining(site) == Decimal("0")

    def test_zero_budget(self):
        site = _site(monthly_budget=Decimal("0"), monthly_spend=Decimal("100"))
        assert BudgetLedger.utilization(site) == 0
        assert BudgetLedger.budget_status(site) == BudgetStatus.healthy
        assert BudgetLedger.should_alert(site) is False

    def test_should_alert(self):
        assert BudgetLedger.should_alert(_site(monthly_spend=Decimal("7949"))) is False
        assert BudgetLedger.should_alert(_site(monthly_spend=Decimal("7950"))) is True
        assert BudgetLedger.should_alert(_site(monthly_spend=Decimal("7950"), alert_threshold=90)) is False


# ═════════════════════════════════════════════════════════════════════
# MUTATIONS
# ═════════════════════════════════════════════════════════════════════


class TestApplySpend:

    def test_applies_once(self):
        site = _site()
        expense = _expense("1200")
        BudgetLedger.apply_spend(site, expense, today=date(2025, 5, 10))
        BudgetLedger.apply_spend(site, expense, today=date(2025, 5, 10))

        assert site.monthly_spend == Decimal("1200")
        assert site.yearly_spend == Decimal("1200")
        assert site.total_amount == Decimal("1200")
        assert site.total_expenses == 1
        assert site.last_expense_date == date(2025, 5, 10)
        assert expense.spend_applied is True

    def test_payment_amount_wins(self):
        site = _site()
        BudgetLedger.apply_spend(site, _expense("1200", payment_amount="1000"))
        assert site.monthly_spend == Decimal("1000")

    def test_alert_once_per_month(self):
        site = _site(monthly_spend=Decimal("7500"))
        alert = BudgetLedger.apply_spend(site, _expense("600"), today=date(2025, 5, 10))
        assert alert is not None
        assert alert.utilization == 81
        assert alert.period == "2025-05"
        assert site.alert_period == "2025-05"

        again = BudgetLedger.apply_spend(site, _expense("600"), today=date(2025, 5, 20))
        assert again is None

        next_month = BudgetLedger.apply_spend(site, _expense("10"), today=date(2025, 6, 1))
        assert next_month is not None
        assert next_month.period == "2025-06"

    def test_no_alert_below_threshold(self):
        site = _site()
        assert BudgetLedger.apply_spend(site, _expense("100")) is None
        assert site.alert_period is None

    def test_resets(self):
        site = _site(
            monthly_spend=Decimal("500"), yearly_spend=Decimal("9000"),
            total_amount=Decimal("9000"), alert_period="2025-05",
        )
        BudgetLedger.reset_monthly(site)
        assert site.monthly_spend == Decimal("0")
        assert site.alert_period is None
        assert site.yearly_spend == Decimal("9000")

        BudgetLedger.reset_yearly(site)
        assert site.yearly_spend == Decimal("0")
        assert site.total_amount == Decimal("9000")


# ═════════════════════════════════════════════════════════════════════
# RESET SCRIPT
# ═════════════════════════════════════════════════════════════════════


class TestResetScript:

    async def test_monthly_reset_all_sites(self, db: AsyncSession):
        a = await seed_site(db, code="AAA", monthly_spend=Decimal("100"), yearly_spend=Decimal("900"))
        b = await seed_site(db, code="BBB", monthly_spend=Decimal("50"), alert_period="2025-05")
        await db.commit()

        count = await reset_budgets(db)
        assert count == 2
        await db.refresh(a)
        await db.refresh(b)
        assert a.monthly_spend == Decimal("0")
        assert a.yearly_spend == Decimal("900")
        assert b.alert_period is None

        audits = (await db.execute(
            select(AuditTrail).where(AuditTrail.action == "reset_monthly")
        )).scalars().all()
        assert len(audits) == 2

    async def test_yearly_reset_single_site(self, db: AsyncSession):
        a = await seed_site(db, code="AAA", monthly_spend=Decimal("100"), yearly_spend=Decimal("900"))
        b = await seed_site(db, code="BBB", yearly_spend=Decimal("400"))
        await db.commit()

        count = await reset_budgets(db, yearly=True, site_code="aaa")
        assert count == 1
        await db.refresh(a)
        await db.refresh(b)
        assert a.yearly_spend == Decimal("0")
        assert a.monthly_spend == Decimal("0")
        assert b.yearly_spend == Decimal("400")

    async def test_dry_run_changes_nothing(self, db: AsyncSession):
        a = await seed_site(db, code="AAA", monthly_spend=Decimal("100"))
        await db.commit()

        assert await reset_budgets(db, dry_run=True) == 1
        await db.refresh(a)
        assert a.monthly_spend == Decimal("100")
