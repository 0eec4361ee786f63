# credentials.py — API key credential resolver
# Features:
# - Family detection by textual prefix (master / organization / session token)
# - SHA-256 digests only; plaintext secrets are never stored or compared
# - Uniform "invalid or expired" outcome for unknown, revoked, expired keys
# - Fire-and-forget last_used_at stamping that can never fail a request
# - Bounded lookup time; a timeout fails closed

import os
import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Set

from fastapi import Depends, Header
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session, get_session_factory
from errors import AuthenticationFailure, AuthorizationFailure
from models import APIKey, KeyType, utcnow, as_utc

logger = logging.getLogger("crm-gateway.credentials")

# ============================================================
# CONFIGURATION
# ============================================================

MASTER_KEY_PREFIX = "ak_master_"
ORG_KEY_PREFIX = "ak_org_"
DEFAULT_SCOPES = ("read", "write")
KNOWN_SCOPES = frozenset(DEFAULT_SCOPES)
SECRET_BYTES = 32
DISPLAY_PREFIX_LENGTH = 12
LOOKUP_TIMEOUT_SECONDS = float(os.getenv("CREDENTIAL_LOOKUP_TIMEOUT_SECONDS", "5"))

INVALID_KEY_MESSAGE = "Invalid or expired API key"

# Strong references so stamping tasks are not garbage collected mid-flight
_pending_stamps: Set[asyncio.Task] = set()


class CredentialFamily(str, Enum):
    MASTER = "master"
    ORGANIZATION = "organization"
    SESSION = "session"


@dataclass(frozen=True)
class ResolvedCredential:
    family: CredentialFamily
    organization_id: Optional[int]
    scopes: Tuple[str, ...]
    key_hash: str
    key_id: int

    @property
    def is_master(self) -> bool:
        return self.family == CredentialFamily.MASTER

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


# ============================================================
# PARSING, HASHING, GENERATION
# ============================================================

def strip_bearer(raw: str) -> str:
    value = (raw or "").strip()
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    return value


def credential_family(token: str) -> CredentialFamily:
    if token.startswith(MASTER_KEY_PREFIX):
        return CredentialFamily.MASTER
    if token.startswith(ORG_KEY_PREFIX):
        return CredentialFamily.ORGANIZATION
    return CredentialFamily.SESSION


def is_api_key(raw: str) -> bool:
    return credential_family(strip_bearer(raw)) != CredentialFamily.SESSION


def hash_api_key(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_api_key(key_type: KeyType) -> Tuple[str, str, str]:
    """Generate an API key. Returns (raw_key, key_hash, key_prefix).

    The raw key is handed to the caller once and never persisted.
    """
    prefix = MASTER_KEY_PREFIX if KeyType(key_type) == KeyType.MASTER else ORG_KEY_PREFIX
    raw_key = prefix + secrets.token_hex(SECRET_BYTES)
    key_hash = hash_api_key(raw_key)
    key_prefix = raw_key[:DISPLAY_PREFIX_LENGTH] + "..."
    return raw_key, key_hash, key_prefix


def normalize_scopes(scopes) -> Tuple[str, ...]:
    if not scopes:
        return DEFAULT_SCOPES
    return tuple(scopes)


# ============================================================
# RESOLUTION
# ============================================================

async def _lookup(db: AsyncSession, key_hash: str) -> Optional[APIKey]:
    stmt = select(APIKey).where(APIKey.key_hash == key_hash)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _stamp_last_used(session_factory, key_hash: str) -> None:
    try:
        async with session_factory() as session:
            await session.execute(
                update(APIKey).where(APIKey.key_hash == key_hash).values(last_used_at=utcnow())
            )
            await session.commit()
    except Exception as e:
        logger.warning(f"Failed to stamp last_used_at for key {key_hash[:8]}: {e}")


def schedule_last_used(session_factory, key_hash: str) -> None:
    task = asyncio.create_task(_stamp_last_used(session_factory, key_hash))
    _pending_stamps.add(task)
    task.add_done_callback(_pending_stamps.discard)


async def pending_stamps() -> None:
    """Wait for outstanding last_used_at updates (used at shutdown and in tests)."""
    if _pending_stamps:
        await asyncio.gather(*list(_pending_stamps), return_exceptions=True)


async def resolve_api_key(
    raw: Optional[str],
    db: AsyncSession,
    session_factory=None,
    now: Optional[datetime] = None,
) -> Optional[ResolvedCredential]:
    """Resolve a bearer value to an API key credential.

    Returns None for anything that is not a valid, live API key. Never raises.
    """
    token = strip_bearer(raw or "")
    family = credential_family(token)
    if family == CredentialFamily.SESSION:
        return None

    key_hash = hash_api_key(token)
    try:
        record = await asyncio.wait_for(_lookup(db, key_hash), timeout=LOOKUP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"API key lookup timed out for key {key_hash[:8]}")
        return None
    except SQLAlchemyError as e:
        logger.error(f"API key lookup failed: {e}")
        return None

    if record is None:
        return None
    if record.revoked_at is not None:
        return None
    now = now or utcnow()
    if record.expires_at is not None and as_utc(record.expires_at) < now:
        return None

    key_type = KeyType(record.type)
    if key_type.value != family.value:
        # Prefix says one family, the stored record another
        return None

    if session_factory is not None:
        schedule_last_used(session_factory, key_hash)

    return ResolvedCredential(
        family=family,
        organization_id=record.organization_id,
        scopes=normalize_scopes(record.scopes),
        key_hash=key_hash,
        key_id=record.id,
    )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_api_key_credential(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
    session_factory=Depends(get_session_factory),
) -> ResolvedCredential:
    if not authorization:
        raise AuthenticationFailure("Missing Authorization header")
    credential = await resolve_api_key(authorization, db, session_factory)
    if credential is None:
        raise AuthenticationFailure(INVALID_KEY_MESSAGE)
    return credential


def require_master_key(action: str):
    """Dependency factory: only master API keys may perform `action`"""
    async def _check(credential: ResolvedCredential = Depends(get_api_key_credential)) -> ResolvedCredential:
        if not credential.is_master:
            raise AuthorizationFailure(f"Only master API keys can {action}")
        return credential
    return _check
