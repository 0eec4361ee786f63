# tests/conftest.py — Shared test fixtures
import os
from datetime import datetime
from typing import Iterable, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("RATE_LIMIT_REDIS_URL", None)

import auth as auth_module
from models import Base, AuthIdentity, Organization, Sale, APIKey, KeyType
from auth import AuthService
from credentials import generate_api_key, pending_stamps
from database import configure_engine, get_db_session, get_session_factory
from onboarding import default_settings
from rate_limit import rate_limiter
from main import app

TEST_PASSWORD = "Password123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = configure_engine(create_async_engine(TEST_DB_URL, echo=False))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    # last_used_at stamps run in the background; let them land before teardown
    await pending_stamps()
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_in_memory_state():
    rate_limiter.store.reset()
    auth_module._login_attempts.clear()
    yield
    rate_limiter.store.reset()


# --- Data helpers ---

async def create_organization(db, name: str, slug: str) -> Organization:
    org = Organization(name=name, slug=slug, settings=default_settings())
    db.add(org)
    await db.commit()
    await db.refresh(org)
    return org


async def create_principal(
    db,
    organization: Organization,
    email: str,
    administrator: bool = False,
    password: Optional[str] = TEST_PASSWORD,
    first_name: str = "Test",
    last_name: str = "User",
    is_service_account: bool = False,
    disabled: bool = False,
) -> Sale:
    identity = AuthIdentity(
        email=email,
        password_hash=AuthService.hash_password(password) if password else None,
        raw_user_meta_data={"first_name": first_name, "last_name": last_name},
        banned=disabled,
    )
    db.add(identity)
    await db.flush()
    sale = Sale(
        user_id=identity.id,
        organization_id=organization.id,
        email=email,
        first_name=first_name,
        last_name=last_name,
        administrator=administrator,
        is_service_account=is_service_account,
        disabled=disabled,
    )
    db.add(sale)
    await db.commit()
    await db.refresh(sale)
    return sale


async def make_api_key(
    db,
    organization_id: Optional[int] = None,
    key_type: KeyType = KeyType.ORGANIZATION,
    scopes: Optional[Iterable[str]] = None,
    expires_at: Optional[datetime] = None,
    revoked_at: Optional[datetime] = None,
    name: str = "Test key",
) -> str:
    """Store a key (digest only) and return the plaintext secret"""
    raw_key, key_hash, key_prefix = generate_api_key(key_type)
    db.add(APIKey(
        name=name,
        key_hash=key_hash,
        key_prefix=key_prefix,
        type=key_type,
        organization_id=organization_id,
        scopes=list(scopes) if scopes is not None else ["read", "write"],
        expires_at=expires_at,
        revoked_at=revoked_at,
    ))
    await db.commit()
    return raw_key


def get_auth_headers(sale: Sale) -> dict:
    """Generate session-token auth headers for a principal"""
    token = AuthService.create_access_token({"sub": sale.user_id, "email": sale.email})
    return {"Authorization": f"Bearer {token}"}


def key_headers(raw_key: str) -> dict:
    return {"Authorization": f"Bearer {raw_key}"}


# --- Fixtures ---

@pytest_asyncio.fixture
async def org_a(db_session):
    return await create_organization(db_session, "Acme", "acme")


@pytest_asyncio.fixture
async def org_b(db_session):
    return await create_organization(db_session, "Globex", "globex")


@pytest_asyncio.fixture
async def admin_a(db_session, org_a):
    return await create_principal(db_session, org_a, "admin@acme.com", administrator=True)


@pytest_asyncio.fixture
async def member_a(db_session, org_a):
    return await create_principal(db_session, org_a, "member@acme.com")


@pytest_asyncio.fixture
async def admin_b(db_session, org_b):
    return await create_principal(db_session, org_b, "admin@globex.com", administrator=True)


@pytest_asyncio.fixture
async def org_a_key(db_session, org_a):
    return await make_api_key(db_session, organization_id=org_a.id)


@pytest_asyncio.fixture
async def org_b_key(db_session, org_b):
    return await make_api_key(db_session, organization_id=org_b.id)


@pytest_asyncio.fixture
async def master_key(db_session):
    return await make_api_key(db_session, key_type=KeyType.MASTER, name="Master")
