"""Budget ledger — per-site spend tracking, approval ladder and budget alerts.

All methods work on an in-session ``Site`` row and never flush; the caller's
transaction decides whether the mutation sticks.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from expenseflow.common.constants import BudgetStatus
from expenseflow.common.exceptions import BudgetConfigError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _dec(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class BudgetAlert:
    """Raised once per month when a site's utilization reaches its alert threshold."""

    site_id: uuid.UUID
    site_name: str
    utilization: int
    monthly_spend: Decimal
    monthly_budget: Decimal
    period: str


class BudgetLedger:
    """Stateless helpers over a site's budget, thresholds and statistics."""

    # ── Threshold ladder ────────────────────────────────────────────

    @staticmethod
    def validate_thresholds(
        auto_approval_limit: Any,
        l1_threshold: Any,
        l2_threshold: Any,
        l3_threshold: Any,
    ) -> None:
        """Raise ``BudgetConfigError`` unless auto < L1 < L2 < L3."""
        ladder = [
            ("auto_approval_limit", _dec(auto_approval_limit)),
            ("l1_threshold", _dec(l1_threshold)),
            ("l2_threshold", _dec(l2_threshold)),
            ("l3_threshold", _dec(l3_threshold)),
        ]
        errors: dict[str, list[str]] = {}
        for (low_name, low), (high_name, high) in zip(ladder, ladder[1:]):
            if low >= high:
                errors.setdefault(high_name, []).append(
                    f"{high_name} ({high}) must be greater than {low_name} ({low})."
                )
        if ladder[0][1] < ZERO:
            errors.setdefault("auto_approval_limit", []).append("Must not be negative.")
        if errors:
            raise BudgetConfigError(errors)

    @staticmethod
    def required_level(site: Any, amount: Any) -> int:
        """Approval levels needed for *amount*; anything above L2 needs L3."""
        amount = _dec(amount)
        if amount <= _dec(site.auto_approval_limit):
            return 0
        if amount <= _dec(site.l1_threshold):
            return 1
        if amount <= _dec(site.l2_threshold):
            return 2
        return 3

    # ── Budget queries ──────────────────────────────────────────────

    @staticmethod
    def is_within_budget(
        site: Any,
        amount: Any,
        category: Optional[str] = None,
        category_spend: Any = None,
    ) -> bool:
        amount = _dec(amount)
        if _dec(site.monthly_spend) + amount > _dec(site.monthly_budget):
            return False
        if category:
            category_budget = _dec((site.category_budgets or {}).get(category))
            if category_budget > ZERO and _dec(category_spend) + amount > category_budget:
                return False
        return True

    @staticmethod
    def utilization(site: Any) -> int:
        """Monthly spend as a whole percentage of the monthly budget."""
        budget = _dec(site.monthly_budget)
        if budget <= ZERO:
            return 0
        pct = _dec(site.monthly_spend) / budget * 100
        return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def remaining(site: Any) -> Decimal:
        return max(ZERO, _dec(site.monthly_budget) - _dec(site.monthly_spend))

    @staticmethod
    def should_alert(site: Any) -> bool:
        """True while monthly spend sits at or above the site's alert threshold."""
        if _dec(site.monthly_budget) <= ZERO:
            return False
        return BudgetLedger.utilization(site) >= (site.alert_threshold or 0)

    @staticmethod
    def budget_status(site: Any) -> BudgetStatus:
        utilization = BudgetLedger.utilization(site)
        if utilization >= 100:
            return BudgetStatus.exceeded
        if utilization >= (site.alert_threshold or 0):
            return BudgetStatus.warning
        return BudgetStatus.healthy

    # ── Mutations ───────────────────────────────────────────────────

    @staticmethod
    def apply_spend(
        site: Any,
        expense: Any,
        *,
        today: Optional[date] = None,
    ) -> Optional[BudgetAlert]:
        """Count *expense* against *site* once.

        The ``spend_applied`` marker on the expense makes a replay a no-op.
        Returns a ``BudgetAlert`` the first time in a month that utilization
        reaches the site's alert threshold.
        """
        if expense.spend_applied:
            logger.debug("Spend for expense %s already applied, skipping", expense.id)
            return None

        today = today or date.today()
        amount = _dec(expense.payment_amount if expense.payment_amount is not None else expense.amount)

        site.monthly_spend = _dec(site.monthly_spend) + amount
        site.yearly_spend = _dec(site.yearly_spend) + amount
        site.total_amount = _dec(site.total_amount) + amount
        site.total_expenses = (site.total_expenses or 0) + 1
        site.last_expense_date = today
        expense.spend_applied = True

        logger.info(
            "Applied spend %s for expense %s to site %s (monthly spend now %s)",
            amount, expense.id, site.id, site.monthly_spend,
        )

        if _dec(site.monthly_budget) <= ZERO:
            return None
        utilization = BudgetLedger.utilization(site)
        period = today.strftime("%Y-%m")
        if utilization < (site.alert_threshold or 0) or site.alert_period == period:
            return None

        site.alert_period = period
        logger.warning(
            "Site %s reached %d%% of its monthly budget", site.id, utilization,
        )
        return BudgetAlert(
            site_id=site.id,
            site_name=site.name,
            utilization=utilization,
            monthly_spend=_dec(site.monthly_spend),
            monthly_budget=_dec(site.monthly_budget),
            period=period,
        )

    @staticmethod
    def reset_monthly(site: Any) -> None:
        site.monthly_spend = ZERO
        site.alert_period = None

    @staticmethod
    def reset_yearly(site: Any) -> None:
        site.yearly_spend = ZERO
        BudgetLedger.reset_monthly(site)
