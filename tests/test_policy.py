"""Policy evaluator test suite — duplicate detection, rule flags, risk scoring,
geo checks, and the SQL-backed duplicate lookup.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import literal_column, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.constants import NextAction, PolicyFlag, UserRole
from expenseflow.expenses.models import Expense
from expenseflow.policy.evaluator import (
    DuplicateLookupError,
    ExpenseCandidate,
    SitePolicy,
    compute_normalized_key,
    compute_receipt_hash,
    evaluate_expense,
    haversine_km,
    over_limit_flag,
)
from expenseflow.policy.lookup import SqlDuplicateLookup
from tests.conftest import SATURDAY, WEEKDAY, seed_expense, seed_site, seed_user


# ── Helpers ─────────────────────────────────────────────────────────


class FakeLookup:
    """In-memory duplicate lookup recording the soft-duplicate window it was asked about."""

    def __init__(self, *, exact=None, soft=None, fail: bool = False):
        self.exact = exact
        self.soft = soft
        self.fail = fail
        self.soft_calls: list[dict] = []

    async def find_by_receipt_hash(self, receipt_hash, *, exclude_id=None):
        if self.fail:
            raise DuplicateLookupError("connection refused")
        return self.exact

    async def find_soft_duplicate(self, **kwargs):
        if self.fail:
            raise DuplicateLookupError("connection refused")
        self.soft_calls.append(kwargs)
        return self.soft


def _candidate(**overrides) -> ExpenseCandidate:
    data = dict(
        id=uuid.uuid4(),
        submitted_by=uuid.uuid4(),
        amount=Decimal("800"),
        expense_date=WEEKDAY,
        title="Client visit taxi",
        category="Travel",
        payment_method="UPI",
    )
    data.update(overrides)
    return ExpenseCandidate(**data)


# ═════════════════════════════════════════════════════════════════════
# RULES
# ═════════════════════════════════════════════════════════════════════


class TestRules:

    async def test_cash_over_cap(self):
        """Cash payment above the site's cash cap is flagged."""
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("250"), payment_method="Cash"),
            SitePolicy(cash_max=Decimal("50")),
            FakeLookup(),
        )
        assert PolicyFlag.cash_over_cap.value in verdict.flags
        assert verdict.risk_score >= 20
        assert verdict.next_action == NextAction.normal

    async def test_cash_cap_ignores_other_methods(self):
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("250"), payment_method="Card"),
            SitePolicy(cash_max=Decimal("50")),
            FakeLookup(),
        )
        assert verdict.flags == []
        assert verdict.risk_score == 0

    async def test_category_limit_forces_escalation(self):
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("1500"), category="Vehicle KM"),
            SitePolicy(per_category_limits={"VEHICLE KM": Decimal("1000")}),
            FakeLookup(),
        )
        assert verdict.flags == ["OVER_LIMIT_VEHICLE_KM"]
        assert verdict.risk_score == 30
        assert verdict.escalate is True

    async def test_weekend_and_site_max_share_one_suspect_flag(self):
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("60000"), category="Food", expense_date=SATURDAY),
            SitePolicy(
                weekend_disallowed_categories=frozenset({"FOOD"}),
                max_expense_amount=Decimal("50000"),
            ),
            FakeLookup(),
        )
        assert verdict.flags.count(PolicyFlag.suspect.value) == 1
        assert verdict.risk_score == 30

    async def test_weekend_rule_skips_weekdays(self):
        verdict = await evaluate_expense(
            _candidate(category="Food", expense_date=WEEKDAY),
            SitePolicy(weekend_disallowed_categories=frozenset({"FOOD"})),
            FakeLookup(),
        )
        assert PolicyFlag.suspect.value not in verdict.flags

    async def test_director_threshold_escalates_without_risk(self):
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("9000"), category="Equipment"),
            SitePolicy(director_escalation_thresholds={"EQUIPMENT": Decimal("5000")}),
            FakeLookup(),
        )
        assert verdict.flags == [PolicyFlag.director_escalation.value]
        assert verdict.risk_score == 0
        assert verdict.next_action == NextAction.escalate


# ═════════════════════════════════════════════════════════════════════
# DUPLICATES / SCORING
# ═════════════════════════════════════════════════════════════════════


class TestDuplicates:

    async def test_exact_duplicate_plus_cash_escalates(self):
        verdict = await evaluate_expense(
            _candidate(amount=Decimal("250"), payment_method="CASH", receipt_hash="ab" * 32),
            SitePolicy(cash_max=Decimal("50")),
            FakeLookup(exact=uuid.uuid4()),
        )
        assert verdict.flags == [
            PolicyFlag.duplicate_receipt.value, PolicyFlag.cash_over_cap.value,
        ]
        assert verdict.risk_score == 90
        assert verdict.escalate is True

    async def test_receipt_lookup_skipped_without_hash(self):
        verdict = await evaluate_expense(_candidate(), SitePolicy(), FakeLookup(exact=uuid.uuid4()))
        assert PolicyFlag.duplicate_receipt.value not in verdict.flags

    async def test_soft_duplicate_window(self):
        lookup = FakeLookup(soft=uuid.uuid4())
        candidate = _candidate()
        verdict = await evaluate_expense(candidate, SitePolicy(duplicate_window_days=7), lookup)

        assert verdict.flags == [PolicyFlag.soft_duplicate.value]
        assert verdict.risk_score == 40
        call = lookup.soft_calls[0]
        assert call["start"] == WEEKDAY - timedelta(days=7)
        assert call["end"] == WEEKDAY + timedelta(days=1)
        assert call["exclude_id"] == candidate.id
        assert call["normalized_key"] == "800.00|2025-03-05|CLIENT VISIT TAXI"

    async def test_risk_is_capped(self):
        verdict = await evaluate_expense(
            _candidate(
                amount=Decimal("60000"),
                payment_method="cash",
                receipt_hash="cd" * 32,
                expense_date=SATURDAY,
                category="Travel",
            ),
            SitePolicy(
                cash_max=Decimal("50"),
                max_expense_amount=Decimal("50000"),
                per_category_limits={"TRAVEL": Decimal("100")},
                weekend_disallowed_categories=frozenset({"TRAVEL"}),
            ),
            FakeLookup(exact=uuid.uuid4(), soft=uuid.uuid4()),
        )
        assert verdict.risk_score == 100

    async def test_receipt_missing_above_threshold(self):
        policy = SitePolicy(require_receipt_above=Decimal("100"))
        verdict = await evaluate_expense(_candidate(amount=Decimal("100")), policy, FakeLookup())
        assert verdict.flags == [PolicyFlag.receipt_missing.value]
        assert verdict.risk_score == 0
        assert verdict.next_action == NextAction.normal

    async def test_receipt_missing_not_flagged(self):
        policy = SitePolicy(require_receipt_above=Decimal("100"))
        below = await evaluate_expense(_candidate(amount=Decimal("99.99")), policy, FakeLookup())
        attached = await evaluate_expense(_candidate(receipt_hash="12" * 32), policy, FakeLookup())
        assert below.flags == []
        assert attached.flags == []

    async def test_lookup_failure_degrades_to_flag(self):
        verdict = await evaluate_expense(
            _candidate(receipt_hash="ef" * 32, payment_method="CASH", amount=Decimal("250")),
            SitePolicy(cash_max=Decimal("50")),
            FakeLookup(fail=True),
        )
        assert PolicyFlag.duplicate_check_skipped.value in verdict.flags
        assert PolicyFlag.cash_over_cap.value in verdict.flags
        assert verdict.risk_score == 20


# ═════════════════════════════════════════════════════════════════════
# GEO
# ═════════════════════════════════════════════════════════════════════


class TestGeo:

    POLICY = SitePolicy(city="Mumbai", latitude=19.0760, longitude=72.8777, geo_distance_limit_km=5)

    async def test_travel_far_from_site(self):
        # Pune
        verdict = await evaluate_expense(
            _candidate(location_lat=18.5204, location_lng=73.8567, location_city="Pune"),
            self.POLICY,
            FakeLookup(),
        )
        assert verdict.flags == [
            PolicyFlag.location_mismatch.value, PolicyFlag.distance_exceeded.value,
        ]
        assert verdict.risk_score == 40

    async def test_travel_within_radius(self):
        verdict = await evaluate_expense(
            _candidate(location_lat=19.08, location_lng=72.88, location_city="mumbai"),
            self.POLICY,
            FakeLookup(),
        )
        assert verdict.flags == []

    async def test_non_travel_ignores_location(self):
        verdict = await evaluate_expense(
            _candidate(category="Food", location_lat=18.5204, location_lng=73.8567, location_city="Pune"),
            self.POLICY,
            FakeLookup(),
        )
        assert verdict.flags == []


# ═════════════════════════════════════════════════════════════════════
# HELPERS
# ═════════════════════════════════════════════════════════════════════


class TestHelpers:

    def test_receipt_hash(self):
        assert compute_receipt_hash(b"") is None
        assert compute_receipt_hash(b"receipt") == compute_receipt_hash(b"receipt")
        assert len(compute_receipt_hash(b"receipt")) == 64

    def test_normalized_key_collapses_vendor_whitespace(self):
        key = compute_normalized_key(Decimal("12.5"), date(2025, 1, 2), "  cafe   coffee day ")
        assert key == "12.50|2025-01-02|CAFE COFFEE DAY"

    def test_over_limit_flag_name(self):
        assert over_limit_flag("Office Supplies") == "OVER_LIMIT_OFFICE_SUPPLIES"

    def test_haversine_mumbai_pune(self):
        assert 115 < haversine_km(19.0760, 72.8777, 18.5204, 73.8567) < 125

    def test_policy_from_site_uppercases_categories(self):
        site = SimpleNamespace(
            duplicate_window_days=None,
            per_category_limits={"Travel": "5000", "Food": 0},
            cash_max=None,
            director_escalation_thresholds={"equipment": 20000},
            weekend_disallowed_categories=["Food"],
            max_expense_amount=Decimal("50000"),
            city="Pune",
            latitude=None,
            longitude=None,
        )
        policy = SitePolicy.from_site(site, geo_distance_limit_km=10)
        assert policy.duplicate_window_days == 30
        assert policy.per_category_limits == {"TRAVEL": Decimal("5000")}
        assert policy.cash_max is None
        assert policy.director_escalation_thresholds == {"EQUIPMENT": Decimal("20000")}
        assert policy.weekend_disallowed_categories == frozenset({"FOOD"})
        assert policy.geo_distance_limit_km == 10


# ═════════════════════════════════════════════════════════════════════
# SQL LOOKUP
# ═════════════════════════════════════════════════════════════════════


class TestSqlDuplicateLookup:

    async def _seed(self, db: AsyncSession):
        site = await seed_site(db)
        user = await seed_user(db, role=UserRole.submitter, site_id=site.id)
        return site, user

    async def test_finds_receipt_hash_excluding_self(self, db: AsyncSession):
        site, user = await self._seed(db)
        first = await seed_expense(db, submitted_by=user.id, site_id=site.id, receipt_hash="aa" * 32)
        second = await seed_expense(db, submitted_by=user.id, site_id=site.id, receipt_hash="aa" * 32)

        lookup = SqlDuplicateLookup(db)
        assert await lookup.find_by_receipt_hash("aa" * 32, exclude_id=second.id) == first.id
        assert await lookup.find_by_receipt_hash("bb" * 32) is None

    async def test_soft_duplicate_respects_window_and_owner(self, db: AsyncSession):
        site, user = await self._seed(db)
        other = await seed_user(db, role=UserRole.submitter, site_id=site.id)
        key = "800.00|2025-03-05|CLIENT VISIT TAXI"
        prior = await seed_expense(db, submitted_by=user.id, site_id=site.id, normalized_key=key)
        await seed_expense(db, submitted_by=other.id, site_id=site.id, normalized_key=key)

        lookup = SqlDuplicateLookup(db)
        found = await lookup.find_soft_duplicate(
            submitted_by=user.id, normalized_key=key,
            start=WEEKDAY - timedelta(days=30), end=WEEKDAY + timedelta(days=1),
        )
        assert found == prior.id

        outside = await lookup.find_soft_duplicate(
            submitted_by=user.id, normalized_key=key,
            start=WEEKDAY + timedelta(days=1), end=WEEKDAY + timedelta(days=30),
        )
        assert outside is None

    async def test_deleted_expenses_are_ignored(self, db: AsyncSession):
        site, user = await self._seed(db)
        await seed_expense(
            db, submitted_by=user.id, site_id=site.id,
            receipt_hash="cc" * 32, is_deleted=True, is_active=False,
        )
        assert await SqlDuplicateLookup(db).find_by_receipt_hash("cc" * 32) is None

    async def test_failed_query_keeps_transaction_usable(self, db: AsyncSession, monkeypatch):
        site, user = await self._seed(db)
        expense = await seed_expense(db, submitted_by=user.id, site_id=site.id)

        class ArchiveLookup(SqlDuplicateLookup):
            def _base(self, exclude_id):
                return select(literal_column("id")).select_from(table("expense_archive"))

        savepoints = []
        begin_nested = db.begin_nested

        def tracking_begin_nested():
            savepoints.append(True)
            return begin_nested()

        monkeypatch.setattr(db, "begin_nested", tracking_begin_nested)

        verdict = await evaluate_expense(
            _candidate(id=expense.id, submitted_by=user.id, receipt_hash="dd" * 32),
            SitePolicy(),
            ArchiveLookup(db),
        )
        assert verdict.flags == [PolicyFlag.duplicate_check_skipped.value]
        assert savepoints == [True]
        assert not db.in_nested_transaction()

        expense.title = "Still writable"
        await db.flush()
        reloaded = (await db.execute(select(Expense.title).where(Expense.id == expense.id))).scalar_one()
        assert reloaded == "Still writable"
