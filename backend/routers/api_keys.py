# routers/api_keys.py — API key management
# Administrators manage their own organization's keys with a session token.
# Master keys may provision organization keys for any organization.
# Secrets are returned exactly once, at creation; only digests are stored.
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPrincipal, get_current_principal
from credentials import (
    KNOWN_SCOPES, DEFAULT_SCOPES, ResolvedCredential, generate_api_key, require_master_key,
)
from database import get_db_session
from errors import AuthorizationFailure, NotFound, ValidationFailure
from models import APIKey, AuditEventType, AuditLog, KeyType, Organization, utcnow

logger = logging.getLogger("crm-gateway.api-keys")

router = APIRouter(prefix="/api/v1/api-keys", tags=["API Keys"])

PROVISIONED_KEY_NAME = "Auto-provisioned organization key"


# --- Schemas ---

class APIKeyCreate(BaseModel):
    name: str
    type: str = KeyType.ORGANIZATION.value
    expires_at: Optional[datetime] = None
    scopes: Optional[List[str]] = None


class APIKeyProvision(BaseModel):
    organization_id: Optional[int] = None
    name: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[List[str]] = None


class APIKeyRevoke(BaseModel):
    id: int


# --- Helpers ---

async def require_key_admin(principal: CurrentPrincipal = Depends(get_current_principal)) -> CurrentPrincipal:
    if not principal.administrator:
        raise AuthorizationFailure("Only administrators can manage API keys")
    return principal


def _validate_scopes(scopes: Optional[List[str]]) -> List[str]:
    if not scopes:
        return list(DEFAULT_SCOPES)
    unknown = [s for s in scopes if s not in KNOWN_SCOPES]
    if unknown:
        raise ValidationFailure(f"Invalid scopes: {', '.join(unknown)}")
    return list(dict.fromkeys(scopes))


def _key_out(key: APIKey) -> dict:
    """Listing shape: never includes the secret or its digest"""
    return {
        "id": key.id,
        "name": key.name,
        "key_prefix": key.key_prefix,
        "type": KeyType(key.type).value,
        "organization_id": key.organization_id,
        "scopes": key.scopes,
        "created_at": key.created_at,
        "last_used_at": key.last_used_at,
        "expires_at": key.expires_at,
        "revoked_at": key.revoked_at,
    }


async def _issue_organization_key(
    db: AsyncSession,
    *,
    organization_id: int,
    name: str,
    scopes: List[str],
    expires_at: Optional[datetime],
    created_by: Optional[int],
    event_type: AuditEventType,
    request_id: Optional[str],
) -> dict:
    raw_key, key_hash, key_prefix = generate_api_key(KeyType.ORGANIZATION)
    key = APIKey(
        name=name,
        key_hash=key_hash,
        key_prefix=key_prefix,
        type=KeyType.ORGANIZATION,
        organization_id=organization_id,
        scopes=scopes,
        created_by=created_by,
        expires_at=expires_at,
    )
    db.add(key)
    await db.flush()

    db.add(AuditLog(
        event_type=event_type,
        organization_id=organization_id,
        actor_sales_id=created_by,
        api_key_id=key.id,
        resource_type="api_key",
        resource_id=str(key.id),
        request_id=request_id,
        details={"name": name, "key_prefix": key_prefix, "scopes": scopes},
    ))
    await db.commit()
    logger.info(f"Issued organization key {key_prefix} for organization {organization_id}")

    return {**_key_out(key), "key": raw_key}


async def _revoke(key_id: int, principal: CurrentPrincipal, request: Request, db: AsyncSession) -> dict:
    result = await db.execute(
        select(APIKey).where(
            APIKey.id == key_id,
            APIKey.organization_id == principal.organization_id,
        )
    )
    key = result.scalar_one_or_none()
    if key is None:
        raise NotFound("API key not found")

    if key.revoked_at is None:
        key.revoked_at = utcnow()
        db.add(AuditLog(
            event_type=AuditEventType.API_KEY_REVOKED,
            organization_id=principal.organization_id,
            actor_sales_id=principal.id,
            api_key_id=key.id,
            resource_type="api_key",
            resource_id=str(key.id),
            request_id=getattr(request.state, "request_id", None),
        ))
        await db.commit()
    return {"success": True}


# --- Endpoints ---

@router.get("")
async def list_api_keys(
    principal: CurrentPrincipal = Depends(require_key_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """List the organization's keys, newest first"""
    result = await db.execute(
        select(APIKey)
        .where(APIKey.organization_id == principal.organization_id)
        .order_by(APIKey.created_at.desc(), APIKey.id.desc())
    )
    return {"data": [_key_out(k) for k in result.scalars().all()]}


@router.post("", status_code=201)
async def create_api_key(
    key_data: APIKeyCreate,
    request: Request,
    principal: CurrentPrincipal = Depends(require_key_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an organization key; the plaintext key is only in this response"""
    if key_data.type not in (KeyType.MASTER.value, KeyType.ORGANIZATION.value):
        raise ValidationFailure("Invalid key type")
    if key_data.type == KeyType.MASTER.value:
        raise AuthorizationFailure("Master keys can only be created out of band")
    if not key_data.name.strip():
        raise ValidationFailure("Key name is required")

    return await _issue_organization_key(
        db,
        organization_id=principal.organization_id,
        name=key_data.name.strip(),
        scopes=_validate_scopes(key_data.scopes),
        expires_at=key_data.expires_at,
        created_by=principal.id,
        event_type=AuditEventType.API_KEY_CREATED,
        request_id=getattr(request.state, "request_id", None),
    )


@router.delete("")
async def revoke_api_key(
    revoke: APIKeyRevoke,
    request: Request,
    principal: CurrentPrincipal = Depends(require_key_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke by body `{"id": ...}`"""
    return await _revoke(revoke.id, principal, request, db)


@router.delete("/{key_id}")
async def revoke_api_key_by_id(
    key_id: int,
    request: Request,
    principal: CurrentPrincipal = Depends(require_key_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return await _revoke(key_id, principal, request, db)


@router.post("/provision", status_code=201)
async def provision_api_key(
    provision: APIKeyProvision,
    request: Request,
    credential: ResolvedCredential = Depends(require_master_key("provision organization keys")),
    db: AsyncSession = Depends(get_db_session),
):
    """Master key only: issue an organization key for any organization"""
    if not provision.organization_id:
        raise ValidationFailure("organization_id is required when using master key")

    organization = await db.get(Organization, provision.organization_id)
    if organization is None:
        raise NotFound("Organization not found")

    return await _issue_organization_key(
        db,
        organization_id=organization.id,
        name=(provision.name or "").strip() or PROVISIONED_KEY_NAME,
        scopes=_validate_scopes(provision.scopes),
        expires_at=provision.expires_at,
        created_by=None,
        event_type=AuditEventType.API_KEY_PROVISIONED,
        request_id=getattr(request.state, "request_id", None),
    )
