# tests/test_users.py — Invitations, profile updates and service accounts
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditEventType, AuditLog, AuthIdentity, Sale
from tests.conftest import TEST_PASSWORD, get_auth_headers, key_headers


@pytest.mark.asyncio
async def test_admin_invites_member(client: AsyncClient, admin_a, org_a):
    """Invited users land in the inviting admin's organization"""
    resp = await client.post(
        "/api/v1/users/invite",
        json={"email": "new@acme.com", "password": "Welcome123!", "first_name": "Nia"},
        headers=get_auth_headers(admin_a),
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["organization_id"] == org_a.id
    assert data["administrator"] is False
    assert data["first_name"] == "Nia"

    login = await client.post("/api/v1/auth/login", json={"email": "new@acme.com", "password": "Welcome123!"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_invite_without_password(client: AsyncClient, db_session, admin_a):
    """Invitation without a password creates an identity that cannot log in yet"""
    resp = await client.post(
        "/api/v1/users/invite", json={"email": "later@acme.com"}, headers=get_auth_headers(admin_a),
    )
    assert resp.status_code == 201
    identity = (await db_session.execute(
        select(AuthIdentity).where(AuthIdentity.email == "later@acme.com")
    )).scalar_one()
    assert identity.password_hash is None

    login = await client.post("/api/v1/auth/login", json={"email": "later@acme.com", "password": TEST_PASSWORD})
    assert login.status_code == 401


@pytest.mark.asyncio
async def test_invite_administrator(client: AsyncClient, db_session, admin_a):
    resp = await client.post(
        "/api/v1/users/invite",
        json={"email": "boss@acme.com", "administrator": True},
        headers=get_auth_headers(admin_a),
    )
    assert resp.json()["data"]["administrator"] is True
    event = (await db_session.execute(
        select(AuditLog).where(AuditLog.event_type == AuditEventType.USER_INVITED)
    )).scalar_one()
    assert event.organization_id == admin_a.organization_id


@pytest.mark.asyncio
async def test_invite_forbidden_for_member(client: AsyncClient, member_a):
    resp = await client.post(
        "/api/v1/users/invite", json={"email": "friend@acme.com"}, headers=get_auth_headers(member_a),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_invite_existing_email(client: AsyncClient, admin_a, admin_b):
    resp = await client.post(
        "/api/v1/users/invite", json={"email": "admin@globex.com"}, headers=get_auth_headers(admin_a),
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_invite_short_password(client: AsyncClient, admin_a):
    resp = await client.post(
        "/api/v1/users/invite",
        json={"email": "short@acme.com", "password": "abc"},
        headers=get_auth_headers(admin_a),
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_member_updates_own_profile(client: AsyncClient, member_a):
    """Members edit their names; role flags are silently kept"""
    resp = await client.patch(
        f"/api/v1/users/{member_a.id}",
        json={"first_name": "Maya", "administrator": True},
        headers=get_auth_headers(member_a),
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["first_name"] == "Maya"
    assert data["last_name"] == "User"
    assert data["administrator"] is False


@pytest.mark.asyncio
async def test_member_cannot_update_others(client: AsyncClient, admin_a, member_a):
    resp = await client.patch(
        f"/api/v1/users/{admin_a.id}", json={"first_name": "Oops"}, headers=get_auth_headers(member_a),
    )
    assert resp.status_code == 403
    assert resp.json()["message"] == "Only administrators can update other users"


@pytest.mark.asyncio
async def test_admin_disables_member(client: AsyncClient, db_session, admin_a, member_a):
    resp = await client.patch(
        f"/api/v1/users/{member_a.id}", json={"disabled": True}, headers=get_auth_headers(admin_a),
    )
    assert resp.json()["data"]["disabled"] is True

    banned = (await db_session.execute(
        select(AuthIdentity.banned).where(AuthIdentity.id == member_a.user_id)
    )).scalar_one()
    assert banned is True

    login = await client.post("/api/v1/auth/login", json={"email": "member@acme.com", "password": TEST_PASSWORD})
    assert login.status_code == 401


@pytest.mark.asyncio
async def test_email_change_updates_identity(client: AsyncClient, db_session, member_a):
    resp = await client.patch(
        f"/api/v1/users/{member_a.id}", json={"email": "renamed@acme.com"}, headers=get_auth_headers(member_a),
    )
    assert resp.json()["data"]["email"] == "renamed@acme.com"
    email = (await db_session.execute(
        select(AuthIdentity.email).where(AuthIdentity.id == member_a.user_id)
    )).scalar_one()
    assert email == "renamed@acme.com"


@pytest.mark.asyncio
async def test_email_change_conflict(client: AsyncClient, admin_a, member_a):
    resp = await client.patch(
        f"/api/v1/users/{member_a.id}", json={"email": "admin@acme.com"}, headers=get_auth_headers(member_a),
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_update_other_tenant_is_not_found(client: AsyncClient, admin_a, admin_b):
    resp = await client.patch(
        f"/api/v1/users/{admin_b.id}", json={"first_name": "Nope"}, headers=get_auth_headers(admin_a),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_master_creates_service_account(client: AsyncClient, db_session, master_key, org_b):
    resp = await client.post(
        "/api/v1/users/service-accounts",
        json={"organization_id": org_b.id, "name": "Zapier"},
        headers=key_headers(master_key),
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["organization_id"] == org_b.id
    assert data["is_service_account"] is True
    assert data["email"].startswith(f"service-{org_b.id}-")
    assert data["email"].endswith("@service-accounts.crm.local")

    sale = await db_session.get(Sale, data["sales_id"])
    assert sale.is_service_account is True
    assert sale.administrator is False


@pytest.mark.asyncio
async def test_service_account_requires_master_key(client: AsyncClient, org_a_key, org_a):
    resp = await client.post(
        "/api/v1/users/service-accounts", json={"organization_id": org_a.id}, headers=key_headers(org_a_key),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_service_account_needs_organization(client: AsyncClient, master_key):
    resp = await client.post("/api/v1/users/service-accounts", json={}, headers=key_headers(master_key))
    assert resp.status_code == 400

    resp = await client.post(
        "/api/v1/users/service-accounts", json={"organization_id": 9999}, headers=key_headers(master_key),
    )
    assert resp.status_code == 404
