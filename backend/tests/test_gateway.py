# tests/test_gateway.py — API-key gateway: tenant isolation, scopes and errors
import pytest
import pytest_asyncio
from datetime import timedelta
from httpx import AsyncClient
from sqlalchemy import select

from main import app
from models import AuditEventType, AuditLog, Company, Contact, ContactNote, Deal, KeyType, Task, utcnow
from rate_limit import InMemoryCounterStore, RateLimiter, get_rate_limiter
from tests.conftest import get_auth_headers, key_headers, make_api_key

GATEWAY = "/api/v1/gateway"


@pytest_asyncio.fixture
async def globex_contact(db_session, org_b):
    contact = Contact(first_name="Gina", last_name="Globex", organization_id=org_b.id)
    db_session.add(contact)
    await db_session.commit()
    return contact


@pytest.mark.asyncio
class TestTenantIsolation:
    async def test_rows_never_cross_tenants(self, client: AsyncClient, org_a, org_a_key, org_b_key):
        res = await client.post(
            f"{GATEWAY}?resource=contacts",
            json={"first_name": "Alice", "last_name": "Smith"},
            headers=key_headers(org_a_key),
        )
        assert res.status_code == 200
        created = res.json()["data"]
        assert len(created) == 1
        assert created[0]["organization_id"] == org_a.id

        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_b_key))
        assert res.json() == {"data": []}

        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_a_key))
        names = [(c["first_name"], c["last_name"]) for c in res.json()["data"]]
        assert names == [("Alice", "Smith")]

    async def test_client_supplied_organization_is_overwritten(self, client: AsyncClient, org_a, org_b, org_a_key):
        res = await client.post(
            f"{GATEWAY}?resource=companies",
            json={"name": "Spoofed", "organization_id": org_b.id},
            headers=key_headers(org_a_key),
        )
        assert res.status_code == 200
        assert res.json()["data"][0]["organization_id"] == org_a.id

    async def test_filter_cannot_reach_other_tenant(self, client: AsyncClient, org_b, org_a_key, globex_contact):
        res = await client.get(
            f"{GATEWAY}?resource=contacts&organization_id={org_b.id}", headers=key_headers(org_a_key),
        )
        assert res.json() == {"data": []}

    async def test_cross_tenant_patch_matches_nothing(
        self, client: AsyncClient, db_session, org_a_key, globex_contact,
    ):
        res = await client.patch(
            f"{GATEWAY}?resource=contacts&id={globex_contact.id}",
            json={"first_name": "Hijacked"},
            headers=key_headers(org_a_key),
        )
        assert res.status_code == 200
        assert res.json() == {"data": []}

        name = (await db_session.execute(
            select(Contact.first_name).where(Contact.id == globex_contact.id)
        )).scalar_one()
        assert name == "Gina"

    async def test_cross_tenant_delete_matches_nothing(
        self, client: AsyncClient, db_session, org_a_key, globex_contact,
    ):
        res = await client.delete(
            f"{GATEWAY}?resource=contacts&id={globex_contact.id}", headers=key_headers(org_a_key),
        )
        assert res.status_code == 200
        assert res.json() == {"data": []}
        remaining = (await db_session.execute(select(Contact.id))).scalars().all()
        assert remaining == [globex_contact.id]

    async def test_own_row_update_and_delete(self, client: AsyncClient, org_a, org_b, org_a_key):
        headers = key_headers(org_a_key)
        created = (await client.post(
            f"{GATEWAY}?resource=deals", json={"name": "Big deal", "amount": 1000}, headers=headers,
        )).json()["data"][0]

        res = await client.patch(
            f"{GATEWAY}?resource=deals&id={created['id']}",
            json={"stage": "won", "organization_id": org_b.id},
            headers=headers,
        )
        updated = res.json()["data"][0]
        assert updated["stage"] == "won"
        assert updated["organization_id"] == org_a.id

        res = await client.delete(f"{GATEWAY}?resource=deals&id={created['id']}", headers=headers)
        assert [d["id"] for d in res.json()["data"]] == [created["id"]]
        assert (await client.get(f"{GATEWAY}?resource=deals", headers=headers)).json() == {"data": []}

    async def test_put_behaves_like_patch(self, client: AsyncClient, org_a_key):
        headers = key_headers(org_a_key)
        created = (await client.post(f"{GATEWAY}?resource=tags", json={"name": "vip"}, headers=headers)).json()
        tag_id = created["data"][0]["id"]
        res = await client.put(f"{GATEWAY}?resource=tags&id={tag_id}", json={"color": "#000000"}, headers=headers)
        assert res.json()["data"][0]["color"] == "#000000"

    async def test_bulk_insert(self, client: AsyncClient, org_a, org_a_key):
        res = await client.post(
            f"{GATEWAY}?resource=tags",
            json=[{"name": "hot"}, {"name": "cold"}],
            headers=key_headers(org_a_key),
        )
        rows = res.json()["data"]
        assert [t["name"] for t in rows] == ["hot", "cold"]
        assert {t["organization_id"] for t in rows} == {org_a.id}

    async def test_sales_are_tenant_scoped(self, client: AsyncClient, admin_a, admin_b, org_a_key):
        res = await client.get(f"{GATEWAY}?resource=sales", headers=key_headers(org_a_key))
        assert [s["email"] for s in res.json()["data"]] == ["admin@acme.com"]

    async def test_filters_by_column(self, client: AsyncClient, org_a_key):
        headers = key_headers(org_a_key)
        await client.post(
            f"{GATEWAY}?resource=contacts",
            json=[{"first_name": "Alice"}, {"first_name": "Bob"}],
            headers=headers,
        )
        res = await client.get(f"{GATEWAY}?resource=contacts&first_name=Bob", headers=headers)
        assert [c["first_name"] for c in res.json()["data"]] == ["Bob"]

    async def test_reference_to_other_tenant_is_not_found(
        self, client: AsyncClient, db_session, org_a_key, globex_contact,
    ):
        headers = key_headers(org_a_key)
        hidden = await client.post(
            f"{GATEWAY}?resource=contact_notes",
            json={"contact_id": globex_contact.id, "text": "planted"},
            headers=headers,
        )
        missing = await client.post(
            f"{GATEWAY}?resource=contact_notes",
            json={"contact_id": 99999, "text": "planted"},
            headers=headers,
        )
        assert hidden.status_code == missing.status_code == 404
        assert hidden.json()["message"] == missing.json()["message"] == "contact_id not found"
        assert (await db_session.execute(select(ContactNote))).scalars().all() == []

    async def test_reference_to_own_row_is_accepted(self, client: AsyncClient, org_a_key):
        headers = key_headers(org_a_key)
        contact = (await client.post(
            f"{GATEWAY}?resource=contacts", json={"first_name": "Alice"}, headers=headers,
        )).json()["data"][0]
        res = await client.post(
            f"{GATEWAY}?resource=tasks", json={"text": "Call", "contact_id": contact["id"]}, headers=headers,
        )
        assert res.status_code == 200
        assert res.json()["data"][0]["contact_id"] == contact["id"]

    async def test_bulk_insert_with_hidden_reference_writes_nothing(
        self, client: AsyncClient, db_session, org_a_key, globex_contact,
    ):
        res = await client.post(
            f"{GATEWAY}?resource=tasks",
            json=[{"text": "Fine"}, {"text": "Planted", "contact_id": globex_contact.id}],
            headers=key_headers(org_a_key),
        )
        assert res.status_code == 404
        assert (await db_session.execute(select(Task))).scalars().all() == []

    async def test_update_cannot_point_at_other_tenant(self, client: AsyncClient, db_session, org_a_key, org_b):
        foreign = Company(name="Globex Corp", organization_id=org_b.id)
        db_session.add(foreign)
        await db_session.commit()

        headers = key_headers(org_a_key)
        deal = (await client.post(
            f"{GATEWAY}?resource=deals", json={"name": "Big deal"}, headers=headers,
        )).json()["data"][0]
        res = await client.patch(
            f"{GATEWAY}?resource=deals&id={deal['id']}", json={"company_id": foreign.id}, headers=headers,
        )
        assert res.status_code == 404
        assert res.json()["message"] == "company_id not found"

        company_id = (await db_session.execute(
            select(Deal.company_id).where(Deal.id == deal["id"])
        )).scalar_one()
        assert company_id is None


@pytest.mark.asyncio
class TestSummaryResources:
    async def test_companies_summary(self, client: AsyncClient, org_a_key):
        headers = key_headers(org_a_key)
        company = (await client.post(
            f"{GATEWAY}?resource=companies", json={"name": "Acme Rockets"}, headers=headers,
        )).json()["data"][0]
        await client.post(
            f"{GATEWAY}?resource=contacts",
            json={"first_name": "Wile", "company_id": company["id"]},
            headers=headers,
        )
        res = await client.get(f"{GATEWAY}?resource=companies_summary", headers=headers)
        summary = res.json()["data"]
        assert len(summary) == 1
        assert summary[0]["nb_contacts"] == 1
        assert summary[0]["nb_deals"] == 0

    async def test_summary_is_read_only(self, client: AsyncClient, org_a_key):
        res = await client.post(
            f"{GATEWAY}?resource=companies_summary", json={"name": "x"}, headers=key_headers(org_a_key),
        )
        assert res.status_code == 405


@pytest.mark.asyncio
class TestMasterKey:
    async def test_master_reads_every_tenant(self, client: AsyncClient, db_session, org_a, org_b, master_key):
        db_session.add_all([
            Company(name="A Co", organization_id=org_a.id),
            Company(name="B Co", organization_id=org_b.id),
        ])
        await db_session.commit()
        res = await client.get(f"{GATEWAY}?resource=companies", headers=key_headers(master_key))
        assert {c["name"] for c in res.json()["data"]} == {"A Co", "B Co"}

    async def test_master_insert_must_name_organization(self, client: AsyncClient, master_key):
        res = await client.post(
            f"{GATEWAY}?resource=contacts", json={"first_name": "Nobody"}, headers=key_headers(master_key),
        )
        assert res.status_code == 500
        assert res.json()["message"] == 'new row violates row-level security policy for table "contacts"'

    async def test_master_insert_into_named_organization(self, client: AsyncClient, org_b, master_key):
        res = await client.post(
            f"{GATEWAY}?resource=contacts",
            json={"first_name": "Placed", "organization_id": org_b.id},
            headers=key_headers(master_key),
        )
        assert res.status_code == 200
        assert res.json()["data"][0]["organization_id"] == org_b.id

    async def test_master_updates_any_tenant(self, client: AsyncClient, db_session, master_key, globex_contact):
        res = await client.patch(
            f"{GATEWAY}?resource=contacts&id={globex_contact.id}",
            json={"first_name": "Georgina"},
            headers=key_headers(master_key),
        )
        assert res.status_code == 200
        assert [c["first_name"] for c in res.json()["data"]] == ["Georgina"]

        name = (await db_session.execute(
            select(Contact.first_name).where(Contact.id == globex_contact.id)
        )).scalar_one()
        assert name == "Georgina"

    async def test_master_moves_row_between_tenants(
        self, client: AsyncClient, db_session, org_a, org_a_key, master_key, globex_contact,
    ):
        res = await client.patch(
            f"{GATEWAY}?resource=contacts&id={globex_contact.id}",
            json={"organization_id": org_a.id},
            headers=key_headers(master_key),
        )
        assert res.json()["data"][0]["organization_id"] == org_a.id

        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_a_key))
        assert [c["id"] for c in res.json()["data"]] == [globex_contact.id]

    async def test_master_deletes_any_tenant(self, client: AsyncClient, db_session, master_key, globex_contact):
        res = await client.delete(
            f"{GATEWAY}?resource=contacts&id={globex_contact.id}", headers=key_headers(master_key),
        )
        assert [c["id"] for c in res.json()["data"]] == [globex_contact.id]
        assert (await db_session.execute(select(Contact))).scalars().all() == []

    async def test_master_reference_must_exist(self, client: AsyncClient, master_key, org_b, globex_contact):
        headers = key_headers(master_key)
        res = await client.post(
            f"{GATEWAY}?resource=tasks",
            json={"text": "Call", "contact_id": globex_contact.id, "organization_id": org_b.id},
            headers=headers,
        )
        assert res.status_code == 200

        res = await client.post(
            f"{GATEWAY}?resource=tasks",
            json={"text": "Call", "contact_id": 99999, "organization_id": org_b.id},
            headers=headers,
        )
        assert res.status_code == 404

    async def test_master_access_is_audited(self, client: AsyncClient, db_session, org_b, master_key):
        await client.post(
            f"{GATEWAY}?resource=tags",
            json={"name": "audited", "organization_id": org_b.id},
            headers=key_headers(master_key),
        )
        entry = (await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.GATEWAY_MASTER_ACCESS)
        )).scalar_one()
        assert entry.resource_type == "tags"
        assert entry.organization_id == org_b.id
        assert entry.details["method"] == "POST"

    async def test_tenant_access_is_not_audited(self, client: AsyncClient, db_session, org_a_key):
        await client.get(f"{GATEWAY}?resource=tags", headers=key_headers(org_a_key))
        entries = (await db_session.execute(select(AuditLog))).scalars().all()
        assert entries == []


@pytest.mark.asyncio
class TestCredentials:
    async def test_missing_header(self, client: AsyncClient):
        res = await client.get(f"{GATEWAY}?resource=contacts")
        assert res.status_code == 401
        assert res.json()["message"] == "Missing Authorization header"

    async def test_unknown_key(self, client: AsyncClient):
        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers("ak_org_" + "f" * 64))
        assert res.status_code == 401
        assert res.json()["message"] == "Invalid or expired API key"

    async def test_expired_key(self, client: AsyncClient, db_session, org_a):
        raw = await make_api_key(db_session, organization_id=org_a.id, expires_at=utcnow() - timedelta(hours=1))
        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(raw))
        assert res.status_code == 401

    async def test_session_token_is_not_accepted(self, client: AsyncClient, admin_a):
        res = await client.get(f"{GATEWAY}?resource=contacts", headers=get_auth_headers(admin_a))
        assert res.status_code == 401

    async def test_read_only_key(self, client: AsyncClient, db_session, org_a):
        raw = await make_api_key(db_session, organization_id=org_a.id, scopes=["read"])
        headers = key_headers(raw)
        assert (await client.get(f"{GATEWAY}?resource=contacts", headers=headers)).status_code == 200

        res = await client.post(f"{GATEWAY}?resource=contacts", json={"first_name": "X"}, headers=headers)
        assert res.status_code == 403
        assert res.json()["message"] == "API key lacks write scope"

    async def test_write_only_key_cannot_read(self, client: AsyncClient, db_session, org_a):
        raw = await make_api_key(db_session, organization_id=org_a.id, scopes=["write"])
        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(raw))
        assert res.status_code == 403
        assert res.json()["message"] == "API key lacks read scope"


@pytest.mark.asyncio
class TestRequestValidation:
    async def test_missing_resource(self, client: AsyncClient, org_a_key):
        res = await client.get(GATEWAY, headers=key_headers(org_a_key))
        assert res.status_code == 400
        assert res.json()["message"] == "Missing resource parameter"

    async def test_unknown_resource(self, client: AsyncClient, org_a_key):
        res = await client.get(f"{GATEWAY}?resource=invoices", headers=key_headers(org_a_key))
        assert res.status_code == 404
        assert res.json()["message"] == "Unknown resource: invoices"

    async def test_sales_are_read_only(self, client: AsyncClient, org_a_key):
        res = await client.post(f"{GATEWAY}?resource=sales", json={"email": "x@acme.com"}, headers=key_headers(org_a_key))
        assert res.status_code == 405

    async def test_row_methods_need_id(self, client: AsyncClient, org_a_key):
        res = await client.patch(f"{GATEWAY}?resource=contacts", json={"first_name": "X"}, headers=key_headers(org_a_key))
        assert res.status_code == 400
        assert res.json()["message"] == "Missing id parameter for PATCH"

        res = await client.delete(f"{GATEWAY}?resource=contacts&id=abc", headers=key_headers(org_a_key))
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid id parameter"

    async def test_invalid_json_body(self, client: AsyncClient, org_a_key):
        res = await client.post(
            f"{GATEWAY}?resource=contacts",
            content=b"{not json",
            headers={**key_headers(org_a_key), "Content-Type": "application/json"},
        )
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid JSON body"

    async def test_unknown_column(self, client: AsyncClient, org_a_key):
        res = await client.post(
            f"{GATEWAY}?resource=contacts", json={"nickname": "Al"}, headers=key_headers(org_a_key),
        )
        assert res.status_code == 400
        assert res.json()["message"] == "Unknown columns: nickname"

    async def test_unknown_filter(self, client: AsyncClient, org_a_key):
        res = await client.get(f"{GATEWAY}?resource=contacts&nickname=Al", headers=key_headers(org_a_key))
        assert res.status_code == 400

    async def test_bad_filter_value(self, client: AsyncClient, org_a_key):
        res = await client.get(f"{GATEWAY}?resource=deals&amount=lots", headers=key_headers(org_a_key))
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid value for column amount"

    async def test_fractional_integer_is_rejected(self, client: AsyncClient, db_session, org_a_key):
        headers = key_headers(org_a_key)
        res = await client.post(f"{GATEWAY}?resource=deals", json={"name": "Odd", "amount": 19.9}, headers=headers)
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid value for column amount"
        assert (await db_session.execute(select(Deal))).scalars().all() == []

        res = await client.post(f"{GATEWAY}?resource=deals", json={"name": "Even", "amount": 20.0}, headers=headers)
        assert res.json()["data"][0]["amount"] == 20

    async def test_error_carries_request_id(self, client: AsyncClient, org_a_key):
        res = await client.get(GATEWAY, headers={**key_headers(org_a_key), "X-Request-ID": "trace-1"})
        assert res.json()["request_id"] == "trace-1"
        assert res.headers["X-Request-ID"] == "trace-1"


@pytest.mark.asyncio
class TestRateLimit:
    async def test_limit_per_key(self, client: AsyncClient, org_a_key, org_b_key):
        limiter = RateLimiter(InMemoryCounterStore(), limit=3, window_seconds=60)
        app.dependency_overrides[get_rate_limiter] = lambda: limiter

        for _ in range(3):
            res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_a_key))
            assert res.status_code == 200

        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_a_key))
        assert res.status_code == 429
        assert res.json()["message"] == "Rate limit exceeded. Maximum 3 requests per minute."

        # Another key has its own window
        res = await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_b_key))
        assert res.status_code == 200

    async def test_limit_applies_before_request_validation(self, client: AsyncClient, org_a_key):
        limiter = RateLimiter(InMemoryCounterStore(), limit=1, window_seconds=60)
        app.dependency_overrides[get_rate_limiter] = lambda: limiter

        await client.get(f"{GATEWAY}?resource=contacts", headers=key_headers(org_a_key))
        res = await client.get(GATEWAY, headers=key_headers(org_a_key))
        assert res.status_code == 429

    async def test_unauthenticated_requests_are_not_counted(self, client: AsyncClient):
        limiter = RateLimiter(InMemoryCounterStore(), limit=1, window_seconds=60)
        app.dependency_overrides[get_rate_limiter] = lambda: limiter

        for _ in range(3):
            res = await client.get(GATEWAY)
            assert res.status_code == 401

    async def test_master_keys_are_limited_too(self, client: AsyncClient, db_session):
        limiter = RateLimiter(InMemoryCounterStore(), limit=1, window_seconds=60)
        app.dependency_overrides[get_rate_limiter] = lambda: limiter
        raw = await make_api_key(db_session, key_type=KeyType.MASTER)

        assert (await client.get(f"{GATEWAY}?resource=tags", headers=key_headers(raw))).status_code == 200
        assert (await client.get(f"{GATEWAY}?resource=tags", headers=key_headers(raw))).status_code == 429
