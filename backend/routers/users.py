# routers/users.py — Invitations, profile updates and service accounts
import time
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, CurrentPrincipal, MIN_PASSWORD_LENGTH, get_current_principal, require_admin
from credentials import ResolvedCredential, require_master_key
from database import get_db_session
from errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from models import AuditEventType, AuditLog, AuthIdentity, Organization, Sale
from onboarding import create_identity
from scope import SessionScope, bind_scope, get_principal_scope

logger = logging.getLogger("crm-gateway.users")

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

SERVICE_ACCOUNT_DOMAIN = "service-accounts.crm.local"


# --- Schemas ---

class UserInvite(BaseModel):
    email: EmailStr
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    administrator: bool = False
    disabled: bool = False


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[dict] = None
    administrator: Optional[bool] = None
    disabled: Optional[bool] = None


class ServiceAccountCreate(BaseModel):
    organization_id: Optional[int] = None
    name: Optional[str] = None


def _sale_out(sale: Sale) -> dict:
    return {
        "id": sale.id,
        "user_id": sale.user_id,
        "organization_id": sale.organization_id,
        "email": sale.email,
        "first_name": sale.first_name,
        "last_name": sale.last_name,
        "avatar": sale.avatar,
        "administrator": bool(sale.administrator),
        "disabled": bool(sale.disabled),
        "is_service_account": bool(sale.is_service_account),
    }


# --- Endpoints ---

@router.post("/invite", status_code=201)
async def invite_user(
    invite: UserInvite,
    request: Request,
    principal: CurrentPrincipal = Depends(require_admin),
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a user in the administrator's organization"""
    password_hash = None
    if invite.password:
        if len(invite.password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailure(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        password_hash = AuthService.hash_password(invite.password)

    sale = await create_identity(
        db,
        email=invite.email,
        password_hash=password_hash,
        metadata={
            "first_name": invite.first_name,
            "last_name": invite.last_name,
            "organization_id": principal.organization_id,
            "administrator": invite.administrator,
            "disabled": invite.disabled,
        },
        request_id=getattr(request.state, "request_id", None),
        event_type=AuditEventType.USER_INVITED,
    )
    logger.info(f"Sales {principal.id} invited {invite.email} into organization {principal.organization_id}")
    return {"data": _sale_out(sale)}


@router.patch("/{sales_id}")
async def update_user(
    sales_id: int,
    update_data: UserUpdate,
    request: Request,
    principal: CurrentPrincipal = Depends(get_current_principal),
    scope: SessionScope = Depends(get_principal_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a profile; administrator and disabled flags are admin-only"""
    result = await db.execute(
        select(Sale).where(Sale.id == sales_id, Sale.organization_id == principal.organization_id)
    )
    sale = result.scalar_one_or_none()
    if sale is None:
        raise NotFound("Not Found")

    if not principal.administrator and principal.id != sale.id:
        raise AuthorizationFailure("Only administrators can update other users")

    identity = await db.get(AuthIdentity, sale.user_id)
    fields_set = update_data.model_fields_set

    if update_data.email and update_data.email != identity.email:
        taken = await db.execute(select(AuthIdentity.id).where(AuthIdentity.email == update_data.email))
        if taken.scalar_one_or_none() is not None:
            raise Conflict("A user with this email already exists")
        identity.email = update_data.email
        sale.email = update_data.email

    if "first_name" in fields_set:
        sale.first_name = update_data.first_name
    if "last_name" in fields_set:
        sale.last_name = update_data.last_name
    identity.raw_user_meta_data = {
        **(identity.raw_user_meta_data or {}),
        "first_name": sale.first_name,
        "last_name": sale.last_name,
    }
    if update_data.avatar:
        sale.avatar = update_data.avatar

    # Non-administrators silently keep their current flags
    if principal.administrator:
        if update_data.administrator is not None:
            sale.administrator = update_data.administrator
        if update_data.disabled is not None:
            sale.disabled = update_data.disabled
            identity.banned = update_data.disabled

    db.add(AuditLog(
        event_type=AuditEventType.USER_UPDATED,
        organization_id=sale.organization_id,
        actor_sales_id=principal.id,
        resource_type="sales",
        resource_id=str(sale.id),
        request_id=getattr(request.state, "request_id", None),
        details={"fields": sorted(fields_set)},
    ))
    await db.commit()
    await db.refresh(sale)
    return {"data": _sale_out(sale)}


@router.post("/service-accounts", status_code=201)
async def create_service_account(
    account: ServiceAccountCreate,
    request: Request,
    credential: ResolvedCredential = Depends(require_master_key("create service accounts")),
    db: AsyncSession = Depends(get_db_session),
):
    """Master key only: a non-interactive principal for an integration"""
    if not account.organization_id:
        raise ValidationFailure("organization_id is required")

    organization = await db.get(Organization, account.organization_id)
    if organization is None:
        raise NotFound("Organization not found")

    bind_scope(db, SessionScope.master())
    email = f"service-{organization.id}-{int(time.time() * 1000)}@{SERVICE_ACCOUNT_DOMAIN}"
    sale = await create_identity(
        db,
        email=email,
        password_hash=None,
        metadata={
            "organization_id": organization.id,
            "is_service_account": True,
            "first_name": account.name or "Integration",
            "last_name": "Service Account",
        },
        request_id=getattr(request.state, "request_id", None),
        event_type=AuditEventType.SERVICE_ACCOUNT_CREATED,
    )
    return {
        "user_id": sale.user_id,
        "sales_id": sale.id,
        "organization_id": sale.organization_id,
        "email": email,
        "is_service_account": True,
    }
