"""Tests for the shared layer — permissions, pagination, problem+json errors, audit."""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.audit import AuditTrail, create_audit_entry, get_audit_trail
from expenseflow.common.constants import UserRole, approval_level_for, has_permission
from expenseflow.common.pagination import PaginationParams, build_meta, paginate
from expenseflow.sites.models import Site
from tests.conftest import auth_headers, seed_site


class TestPermissions:

    @pytest.mark.parametrize(
        "role, level",
        [
            (UserRole.submitter, 0),
            (UserRole.l1_approver, 1),
            (UserRole.l2_approver, 2),
            ("l3_approver", 3),
            (UserRole.finance, 0),
        ],
    )
    def test_approval_level_for(self, role, level):
        assert approval_level_for(role) == level

    def test_permission_matrix(self):
        assert has_permission(UserRole.finance, "expense:process_payment")
        assert not has_permission(UserRole.l3_approver, "expense:process_payment")
        assert has_permission("l3_approver", "expense:cancel_any")
        assert not has_permission(UserRole.submitter, "expense:approve")
        assert not has_permission(UserRole.l1_approver, "budget:read")
        assert has_permission(UserRole.finance, "user:manage")
        assert not has_permission(UserRole.l2_approver, "user:manage")


class TestPagination:

    def test_build_meta(self):
        meta = build_meta(total=101, page=2, page_size=50)
        assert meta.total_pages == 3
        assert meta.has_next is True
        assert meta.has_prev is True

        empty = build_meta(total=0, page=1, page_size=50)
        assert empty.total_pages == 0
        assert empty.has_next is False

    async def test_paginate_with_sort(self, db: AsyncSession):
        for code in ("AAA", "BBB", "CCC"):
            await seed_site(db, code=code)
        await seed_site(db, code="ZZZ", is_active=False)

        query = select(Site).where(Site.is_active.is_(True)).order_by(Site.code)
        rows, meta = await paginate(
            db, query, PaginationParams(page=1, page_size=2, sort="-code"), model=Site,
        )
        assert [s.code for s in rows] == ["CCC", "BBB"]
        assert meta.total == 3
        assert meta.has_next is True

    async def test_unknown_sort_column_is_ignored(self, db: AsyncSession):
        for code in ("BBB", "AAA"):
            await seed_site(db, code=code)

        query = select(Site).order_by(Site.code)
        rows, _ = await paginate(
            db, query, PaginationParams(page=1, page_size=10, sort="code; drop table sites"),
            model=Site,
        )
        assert [s.code for s in rows] == ["AAA", "BBB"]


class TestProblemDetails:

    async def test_not_found(self, client: AsyncClient, org):
        missing = uuid.uuid4()
        resp = await client.get(f"/api/v1/sites/{missing}", headers=auth_headers(org.l3))

        assert resp.status_code == 404
        assert resp.headers["content-type"].startswith("application/problem+json")
        body = resp.json()
        assert body["type"].endswith("/not-found")
        assert body["status"] == 404
        assert body["instance"] == f"/api/v1/sites/{missing}"
        assert str(missing) in body["detail"]

    async def test_request_validation(self, client: AsyncClient, org):
        resp = await client.post(
            "/api/v1/sites/", json={"monthly_budget": "-5"}, headers=auth_headers(org.l3),
        )

        assert resp.status_code == 422
        body = resp.json()
        assert body["type"].endswith("/validation-error")
        assert "name" in body["errors"]
        assert "monthly_budget" in body["errors"]

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestAudit:

    async def test_entry_is_flushed(self, db: AsyncSession, org):
        entry = await create_audit_entry(
            db,
            action="update_thresholds",
            entity_type="site",
            entity_id=org.site.id,
            actor_id=org.l3.id,
            old_values={"l1_threshold": Decimal("1000")},
            new_values={"l1_threshold": Decimal("1500"), "by": org.l3.id, "on": date(2025, 3, 5)},
        )

        stored = (
            await db.execute(select(AuditTrail).where(AuditTrail.id == entry.id))
        ).scalar_one()
        assert stored.old_values == {"l1_threshold": "1000"}
        assert stored.new_values == {
            "l1_threshold": "1500", "by": str(org.l3.id), "on": "2025-03-05",
        }

    async def test_trail_for_entity(self, db: AsyncSession, org):
        for action in ("create", "update_thresholds"):
            await create_audit_entry(db, action=action, entity_type="site", entity_id=org.site.id)
        await create_audit_entry(db, action="create", entity_type="site", entity_id=uuid.uuid4())

        trail = await get_audit_trail(db, "site", org.site.id)
        assert [e.action for e in trail] == ["create", "update_thresholds"]
