"""Policy evaluator — fraud / duplicate / over-limit scoring for an expense.

``evaluate_expense`` is a scoring function over immutable inputs. Its only
I/O is the duplicate lookup passed in by the caller; it never writes.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional, Protocol

from expenseflow.common.constants import (
    ExpenseCategory,
    NextAction,
    OVER_LIMIT_FLAG_PREFIX,
    PolicyFlag,
)

logger = logging.getLogger(__name__)

# ── Scoring weights ─────────────────────────────────────────────────

EXACT_DUPLICATE_RISK = 70
SOFT_DUPLICATE_RISK = 40
OVER_LIMIT_RISK = 30
CASH_OVER_CAP_RISK = 20
WEEKEND_RISK = 10
SITE_MAX_RISK = 20
LOCATION_MISMATCH_RISK = 20
DISTANCE_EXCEEDED_RISK = 20
MAX_RISK = 100
ESCALATION_RISK = 70

EARTH_RADIUS_KM = 6371.0
CASH_PAYMENT_METHODS = frozenset({"CASH"})

_WHITESPACE = re.compile(r"\s+")


class DuplicateLookupError(Exception):
    """Raised by a duplicate lookup when the backing store cannot be queried."""


class DuplicateLookup(Protocol):
    """Read-only port used for exact / soft duplicate detection."""

    async def find_by_receipt_hash(
        self, receipt_hash: str, *, exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[uuid.UUID]:
        ...

    async def find_soft_duplicate(
        self,
        *,
        submitted_by: uuid.UUID,
        normalized_key: str,
        start: date,
        end: date,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[uuid.UUID]:
        ...


# ── Inputs / output ─────────────────────────────────────────────────

@dataclass(frozen=True)
class ExpenseCandidate:
    submitted_by: uuid.UUID
    amount: Decimal
    expense_date: date
    title: str
    category: str
    payment_method: Optional[str] = None
    id: Optional[uuid.UUID] = None
    receipt_hash: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_city: Optional[str] = None

    @classmethod
    def from_expense(cls, expense: Any) -> "ExpenseCandidate":
        return cls(
            id=expense.id,
            submitted_by=expense.submitted_by,
            amount=Decimal(expense.amount),
            expense_date=expense.expense_date,
            title=expense.title,
            category=expense.category,
            payment_method=expense.payment_method,
            receipt_hash=expense.receipt_hash,
            location_lat=expense.location_lat,
            location_lng=expense.location_lng,
            location_city=expense.location_city,
        )


@dataclass(frozen=True)
class SitePolicy:
    """Site policy configuration, detached from the ORM row."""

    duplicate_window_days: int = 30
    per_category_limits: dict[str, Decimal] = field(default_factory=dict)
    cash_max: Optional[Decimal] = Decimal("2000")
    director_escalation_thresholds: dict[str, Decimal] = field(default_factory=dict)
    weekend_disallowed_categories: frozenset[str] = frozenset()
    max_expense_amount: Optional[Decimal] = None
    require_receipt_above: Optional[Decimal] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geo_distance_limit_km: float = 5.0

    @classmethod
    def from_site(cls, site: Any, *, geo_distance_limit_km: float = 5.0) -> "SitePolicy":
        return cls(
            duplicate_window_days=site.duplicate_window_days or 30,
            per_category_limits=_upper_keys(site.per_category_limits),
            cash_max=Decimal(site.cash_max) if site.cash_max is not None else None,
            director_escalation_thresholds=_upper_keys(site.director_escalation_thresholds),
            weekend_disallowed_categories=frozenset(
                category_key(c) for c in (site.weekend_disallowed_categories or [])
            ),
            max_expense_amount=(
                Decimal(site.max_expense_amount)
                if site.max_expense_amount is not None else None
            ),
            require_receipt_above=(
                Decimal(site.require_receipt_above)
                if site.require_receipt_above is not None else None
            ),
            city=site.city,
            latitude=site.latitude,
            longitude=site.longitude,
            geo_distance_limit_km=geo_distance_limit_km,
        )


@dataclass
class PolicyVerdict:
    flags: list[str]
    risk_score: int
    next_action: NextAction
    receipt_hash: Optional[str] = None
    normalized_key: Optional[str] = None

    @property
    def escalate(self) -> bool:
        return self.next_action == NextAction.escalate


# ── Key / hash helpers ──────────────────────────────────────────────

def compute_receipt_hash(content: Optional[bytes]) -> Optional[str]:
    """SHA-256 hex digest of receipt bytes, or None without a receipt."""
    if not content:
        return None
    return hashlib.sha256(content).hexdigest()


def normalize_vendor(vendor: Optional[str]) -> str:
    if not vendor:
        return ""
    return _WHITESPACE.sub(" ", vendor).strip().upper()


def compute_normalized_key(amount: Decimal, expense_date: date, vendor: Optional[str]) -> str:
    """``"<amount:.2f>|<YYYY-MM-DD>|<VENDOR>"``; the title stands in for the vendor."""
    return f"{Decimal(amount):.2f}|{expense_date.isoformat()}|{normalize_vendor(vendor)}"


def category_key(category: str) -> str:
    return str(category).strip().upper()


def over_limit_flag(category: str) -> str:
    return OVER_LIMIT_FLAG_PREFIX + category_key(category).replace(" ", "_")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _upper_keys(mapping: Optional[dict]) -> dict[str, Decimal]:
    return {category_key(k): Decimal(str(v)) for k, v in (mapping or {}).items() if v}


def _add(flags: list[str], flag: str) -> None:
    if flag not in flags:
        flags.append(flag)


# ── Rule checks ─────────────────────────────────────────────────────

def evaluate_rules(candidate: ExpenseCandidate, policy: SitePolicy) -> tuple[list[str], int, bool]:
    """Apply site rules. Returns ``(flags, risk, escalation_forced)``."""
    flags: list[str] = []
    risk = 0
    escalate = False
    amount = Decimal(candidate.amount)
    key = category_key(candidate.category)

    limit = policy.per_category_limits.get(key)
    if limit and amount > limit:
        _add(flags, over_limit_flag(candidate.category))
        risk += OVER_LIMIT_RISK
        escalate = True

    method = (candidate.payment_method or "").strip().upper()
    if method in CASH_PAYMENT_METHODS and policy.cash_max and amount > policy.cash_max:
        _add(flags, PolicyFlag.cash_over_cap.value)
        risk += CASH_OVER_CAP_RISK

    # Saturday=5, Sunday=6
    if candidate.expense_date.weekday() >= 5 and key in policy.weekend_disallowed_categories:
        _add(flags, PolicyFlag.suspect.value)
        risk += WEEKEND_RISK

    if policy.max_expense_amount and amount > policy.max_expense_amount:
        _add(flags, PolicyFlag.suspect.value)
        risk += SITE_MAX_RISK

    # Informational only; a missing receipt adds no risk
    if (
        policy.require_receipt_above is not None
        and amount >= policy.require_receipt_above
        and not candidate.receipt_hash
    ):
        _add(flags, PolicyFlag.receipt_missing.value)

    director = policy.director_escalation_thresholds.get(key)
    if director and amount > director:
        _add(flags, PolicyFlag.director_escalation.value)
        escalate = True

    return flags, risk, escalate


def evaluate_geo(candidate: ExpenseCandidate, policy: SitePolicy) -> tuple[list[str], int]:
    """Location checks, Travel expenses with coordinates only."""
    flags: list[str] = []
    risk = 0
    if candidate.location_lat is None or candidate.location_lng is None:
        return flags, risk
    if category_key(candidate.category) != category_key(ExpenseCategory.travel.value):
        return flags, risk

    if policy.city and candidate.location_city:
        if candidate.location_city.strip().lower() != policy.city.strip().lower():
            flags.append(PolicyFlag.location_mismatch.value)
            risk += LOCATION_MISMATCH_RISK

    if policy.latitude is not None and policy.longitude is not None:
        distance = haversine_km(
            policy.latitude, policy.longitude,
            candidate.location_lat, candidate.location_lng,
        )
        if distance > policy.geo_distance_limit_km:
            flags.append(PolicyFlag.distance_exceeded.value)
            risk += DISTANCE_EXCEEDED_RISK

    return flags, risk


# ── Entry point ─────────────────────────────────────────────────────

async def evaluate_expense(
    candidate: ExpenseCandidate,
    policy: SitePolicy,
    lookup: DuplicateLookup,
) -> PolicyVerdict:
    """Score *candidate* against *policy* and prior expenses reachable via *lookup*."""
    normalized_key = compute_normalized_key(
        candidate.amount, candidate.expense_date, candidate.title,
    )
    flags: list[str] = []
    risk = 0

    try:
        if candidate.receipt_hash:
            exact = await lookup.find_by_receipt_hash(
                candidate.receipt_hash, exclude_id=candidate.id,
            )
            if exact is not None:
                flags.append(PolicyFlag.duplicate_receipt.value)
                risk += EXACT_DUPLICATE_RISK

        soft = await lookup.find_soft_duplicate(
            submitted_by=candidate.submitted_by,
            normalized_key=normalized_key,
            start=candidate.expense_date - timedelta(days=policy.duplicate_window_days),
            end=candidate.expense_date + timedelta(days=1),
            exclude_id=candidate.id,
        )
        if soft is not None:
            flags.append(PolicyFlag.soft_duplicate.value)
            risk += SOFT_DUPLICATE_RISK
    except DuplicateLookupError as exc:
        logger.warning(
            "Duplicate lookup failed for expense %s, continuing without it: %s",
            candidate.id, exc,
        )
        flags.append(PolicyFlag.duplicate_check_skipped.value)

    rule_flags, rule_risk, forced = evaluate_rules(candidate, policy)
    geo_flags, geo_risk = evaluate_geo(candidate, policy)
    for flag in rule_flags + geo_flags:
        _add(flags, flag)

    risk_score = min(MAX_RISK, risk + rule_risk + geo_risk)
    escalate = risk_score >= ESCALATION_RISK or forced
    next_action = NextAction.escalate if escalate else NextAction.normal

    if escalate:
        logger.info(
            "Expense %s escalated: risk=%d flags=%s",
            candidate.id, risk_score, flags,
        )

    return PolicyVerdict(
        flags=flags,
        risk_score=risk_score,
        next_action=next_action,
        receipt_hash=candidate.receipt_hash,
        normalized_key=normalized_key,
    )
