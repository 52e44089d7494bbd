"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (policy, budget, workflow, expenses, sites,
notifications). Uses SQLite + aiosqlite for fast isolated tests without
PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from expenseflow.common.constants import ExpenseStatus, UserRole
from expenseflow.config import settings
from expenseflow.database import Base, get_db
from expenseflow.main import create_app
from expenseflow.notifications.dispatcher import NotificationDispatcher, get_dispatcher

# Import ALL model modules so SQLAlchemy can resolve cross-module foreign keys
import expenseflow.common.audit  # noqa: F401
import expenseflow.expenses.models  # noqa: F401
import expenseflow.notifications.models  # noqa: F401
import expenseflow.sites.models  # noqa: F401
import expenseflow.users.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT ────────────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() and uuid_generate_v4() as SQLite custom functions."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )
    dbapi_conn.create_function(
        "uuid_generate_v4", 0, lambda: str(uuid.uuid4()),
    )

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)

# Fixed past dates: a Wednesday and the Saturday after it
WEEKDAY = date(2025, 3, 5)
SATURDAY = date(2025, 3, 8)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from expenseflow.common.rate_limit import limiter
    limiter.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def _override_get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(TestSessionFactory)


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB and dispatcher dependencies overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    application.dependency_overrides[get_dispatcher] = _override_get_dispatcher
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_site(
    *,
    name: str = "Mumbai Plant",
    code: Optional[str] = None,
    city: str = "Mumbai",
    **overrides,
) -> dict:
    data = dict(
        id=uuid.uuid4(),
        name=name,
        code=code or f"S{uuid.uuid4().hex[:5].upper()}",
        city=city,
        state="Maharashtra",
        latitude=19.0760,
        longitude=72.8777,
        monthly_budget=Decimal("100000"),
        yearly_budget=Decimal("1200000"),
        category_budgets={},
        alert_threshold=80,
        auto_approval_limit=Decimal("500"),
        l1_threshold=Decimal("1000"),
        l2_threshold=Decimal("5000"),
        l3_threshold=Decimal("10000"),
        vehicle_km_limit=1000,
        max_expense_amount=Decimal("50000"),
        require_receipt_above=Decimal("100"),
        duplicate_window_days=30,
        per_category_limits={},
        cash_max=Decimal("2000"),
        director_escalation_thresholds={},
        weekend_disallowed_categories=[],
        monthly_spend=Decimal("0"),
        yearly_spend=Decimal("0"),
        total_expenses=0,
        total_amount=Decimal("0"),
        is_active=True,
    )
    data.update(overrides)
    return data


def _make_user(
    *,
    role: UserRole = UserRole.submitter,
    site_id: Optional[uuid.UUID] = None,
    name: Optional[str] = None,
    **overrides,
) -> dict:
    suffix = uuid.uuid4().hex[:6]
    data = dict(
        id=uuid.uuid4(),
        name=name or f"{role.value.title()} {suffix}",
        email=f"{role.value}.{suffix}@expenseflow.in",
        employee_id=f"EMP-{suffix.upper()}",
        role=role.value,
        site_id=site_id,
        department="Operations",
        is_active=True,
    )
    data.update(overrides)
    return data


def _make_expense(
    *,
    submitted_by: uuid.UUID,
    site_id: uuid.UUID,
    amount: Decimal = Decimal("800"),
    **overrides,
) -> dict:
    data = dict(
        id=uuid.uuid4(),
        expense_number=f"EXP-{uuid.uuid4().hex[:8].upper()}",
        title="Client visit taxi",
        amount=amount,
        currency="INR",
        category="Travel",
        payment_method="UPI",
        expense_date=WEEKDAY,
        submitted_by=submitted_by,
        site_id=site_id,
        status=ExpenseStatus.draft.value,
        current_approval_level=0,
        required_approval_level=0,
        policy_flags=[],
        risk_score=0,
    )
    data.update(overrides)
    return data


async def seed_site(db: AsyncSession, **kwargs):
    from expenseflow.sites.models import Site

    site = Site(**_make_site(**kwargs))
    db.add(site)
    await db.flush()
    return site


async def seed_user(db: AsyncSession, **kwargs):
    from expenseflow.users.models import User

    user = User(**_make_user(**kwargs))
    db.add(user)
    await db.flush()
    return user


async def seed_expense(db: AsyncSession, **kwargs):
    from expenseflow.expenses.models import Expense

    expense = Expense(**_make_expense(**kwargs))
    db.add(expense)
    await db.flush()
    return expense


@dataclass
class Org:
    """A site with its submitter, approver pools and finance user."""

    site: object
    submitter: object
    l1_a: object
    l1_b: object
    l2: object
    l3: object
    finance: object


@pytest.fixture
async def org(db) -> Org:
    """One site with two L1 approvers, one L2, and cross-site L3 / finance users."""
    site = await seed_site(db, code="MUM")
    org = Org(
        site=site,
        submitter=await seed_user(db, role=UserRole.submitter, site_id=site.id, name="Sam Submitter"),
        l1_a=await seed_user(db, role=UserRole.l1_approver, site_id=site.id, name="Asha L1"),
        l1_b=await seed_user(db, role=UserRole.l1_approver, site_id=site.id, name="Bilal L1"),
        l2=await seed_user(db, role=UserRole.l2_approver, site_id=site.id, name="Chitra L2"),
        l3=await seed_user(db, role=UserRole.l3_approver, name="Dev L3"),
        finance=await seed_user(db, role=UserRole.finance, name="Esha Finance"),
    )
    await db.commit()
    return org


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    user_id: uuid.UUID,
    expired: bool = False,
    token_type: str = "access",
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRY_HOURS)
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
