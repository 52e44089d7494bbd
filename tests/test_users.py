"""Users module test suite — account creation, the site rule, role changes,
deactivation and the admin listings.
"""

from __future__ import annotations

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.common.audit import get_audit_trail
from expenseflow.common.constants import UserRole
from expenseflow.users.models import User
from tests.conftest import TestSessionFactory, auth_headers, seed_site, seed_user

BASE = "/api/v1/users"


def _user_body(**overrides) -> dict:
    body = {
        "name": "Farah Field",
        "email": "Farah.Field@ExpenseFlow.in",
        "employee_id": "EMP-9001",
        "department": "Operations",
        "role": "submitter",
        "site_code": "mum",
    }
    body.update(overrides)
    return body


# ═════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════


class TestCreateUser:

    async def test_l3_creates_user_by_site_code(self, client: AsyncClient, org):
        resp = await client.post(f"{BASE}/", json=_user_body(), headers=auth_headers(org.l3))
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["email"] == "farah.field@expenseflow.in"
        assert data["site_id"] == str(org.site.id)
        assert data["role"] == "submitter"
        assert data["approval_level"] == 0
        assert data["is_active"] is True

    async def test_finance_creates_cross_site_user(self, client: AsyncClient, org):
        body = _user_body(role="finance", site_code=None, email="payables@expenseflow.in")
        resp = await client.post(f"{BASE}/", json=body, headers=auth_headers(org.finance))
        assert resp.status_code == 201, resp.text
        assert resp.json()["site_id"] is None

    async def test_other_roles_forbidden(self, client: AsyncClient, org):
        resp = await client.post(f"{BASE}/", json=_user_body(), headers=auth_headers(org.l2))
        assert resp.status_code == 403

    async def test_site_bound_role_needs_site(self, client: AsyncClient, org):
        body = _user_body(role="l1_approver", site_code=None)
        resp = await client.post(f"{BASE}/", json=body, headers=auth_headers(org.l3))
        assert resp.status_code == 422
        assert "site_id" in resp.json()["errors"]

    async def test_unknown_site_code(self, client: AsyncClient, org):
        resp = await client.post(
            f"{BASE}/", json=_user_body(site_code="zzz"), headers=auth_headers(org.l3),
        )
        assert resp.status_code == 404

    async def test_duplicate_email_and_employee_id(self, client: AsyncClient, org):
        resp = await client.post(
            f"{BASE}/", json=_user_body(email=org.submitter.email), headers=auth_headers(org.l3),
        )
        assert resp.status_code == 409
        assert "email" in resp.json()["errors"]

        resp = await client.post(
            f"{BASE}/",
            json=_user_body(employee_id=org.submitter.employee_id),
            headers=auth_headers(org.l3),
        )
        assert resp.status_code == 409
        assert "employee_id" in resp.json()["errors"]

    async def test_invalid_email(self, client: AsyncClient, org):
        resp = await client.post(
            f"{BASE}/", json=_user_body(email="not-an-email"), headers=auth_headers(org.l3),
        )
        assert resp.status_code == 422


class TestSiteConstraint:

    async def test_database_rejects_siteless_submitter(self, db: AsyncSession):
        db.add(User(
            name="Orphan", email="orphan@expenseflow.in",
            role=UserRole.submitter.value, site_id=None, is_active=True,
        ))
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()


# ═════════════════════════════════════════════════════════════════════
# ROLE / DEACTIVATE
# ═════════════════════════════════════════════════════════════════════


class TestRoleChange:

    async def test_promote_to_l1(self, client: AsyncClient, org):
        resp = await client.put(
            f"{BASE}/{org.submitter.id}/role",
            json={"role": "l1_approver"},
            headers=auth_headers(org.l3),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["approval_level"] == 1
        assert resp.json()["site_id"] == str(org.site.id)

    async def test_move_to_site_bound_role_needs_site(self, client: AsyncClient, org):
        resp = await client.put(
            f"{BASE}/{org.finance.id}/role",
            json={"role": "l2_approver"},
            headers=auth_headers(org.l3),
        )
        assert resp.status_code == 422

        other = await client.post(
            "/api/v1/sites/", json={"name": "Pune Depot", "code": "pnq"}, headers=auth_headers(org.l3),
        )
        resp = await client.put(
            f"{BASE}/{org.finance.id}/role",
            json={"role": "l2_approver", "site_id": other.json()["id"]},
            headers=auth_headers(org.l3),
        )
        assert resp.status_code == 200
        assert resp.json()["site_id"] == other.json()["id"]

    async def test_unknown_user(self, client: AsyncClient, org):
        resp = await client.put(
            f"{BASE}/{uuid.uuid4()}/role", json={"role": "submitter"}, headers=auth_headers(org.l3),
        )
        assert resp.status_code == 404


class TestDeactivate:

    async def test_deactivated_user_loses_access(self, client: AsyncClient, org):
        resp = await client.put(f"{BASE}/{org.l1_b.id}/deactivate", headers=auth_headers(org.l3))
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        resp = await client.get("/api/v1/expenses/", headers=auth_headers(org.l1_b))
        assert resp.status_code == 401

    async def test_cannot_deactivate_self(self, client: AsyncClient, org):
        resp = await client.put(f"{BASE}/{org.l3.id}/deactivate", headers=auth_headers(org.l3))
        assert resp.status_code == 422

    async def test_deactivation_is_audited(self, client: AsyncClient, org):
        await client.put(f"{BASE}/{org.l1_b.id}/deactivate", headers=auth_headers(org.finance))
        await client.put(f"{BASE}/{org.l1_b.id}/deactivate", headers=auth_headers(org.finance))

        async with TestSessionFactory() as session:
            trail = await get_audit_trail(session, "user", org.l1_b.id)
        assert [e.action for e in trail] == ["deactivate"]
        assert trail[0].actor_id == org.finance.id


# ═════════════════════════════════════════════════════════════════════
# LISTINGS
# ═════════════════════════════════════════════════════════════════════


class TestListings:

    async def test_list_active_users(self, client: AsyncClient, org):
        await client.put(f"{BASE}/{org.l1_b.id}/deactivate", headers=auth_headers(org.l3))

        resp = await client.get(f"{BASE}/", headers=auth_headers(org.l3))
        assert resp.status_code == 200
        assert resp.json()["meta"]["total"] == 6

        resp = await client.get(
            f"{BASE}/", params={"include_inactive": True}, headers=auth_headers(org.l3),
        )
        assert resp.json()["meta"]["total"] == 7

    async def test_list_filters(self, client: AsyncClient, db: AsyncSession, org):
        elsewhere = await seed_site(db, code="DEL")
        await seed_user(db, role=UserRole.l1_approver, site_id=elsewhere.id)
        await db.commit()

        resp = await client.get(
            f"{BASE}/",
            params={"role": "l1_approver", "site_id": str(org.site.id)},
            headers=auth_headers(org.l3),
        )
        assert {u["id"] for u in resp.json()["data"]} == {str(org.l1_a.id), str(org.l1_b.id)}

    async def test_list_by_role(self, client: AsyncClient, org):
        resp = await client.get(f"{BASE}/role/l1_approver", headers=auth_headers(org.finance))
        assert resp.status_code == 200
        assert [u["name"] for u in resp.json()] == ["Asha L1", "Bilal L1"]

        resp = await client.get(f"{BASE}/role/l1_approver", headers=auth_headers(org.submitter))
        assert resp.status_code == 403
