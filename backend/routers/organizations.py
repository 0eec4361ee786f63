# routers/organizations.py — The caller's own organization
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPrincipal, get_current_principal, require_admin
from database import get_db_session
from errors import NotFound, ValidationFailure
from models import AuditEventType, AuditLog, Organization
from onboarding import default_settings

logger = logging.getLogger("crm-gateway.organizations")

router = APIRouter(prefix="/api/v1/organizations", tags=["Organizations"])


# --- Schemas ---

class OrgUpdate(BaseModel):
    name: Optional[str] = None
    settings: Optional[dict] = None
    logo_light: Optional[str] = None
    logo_dark: Optional[str] = None


def _org_out(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "settings": org.settings or {},
        "logo_light": org.logo_light,
        "logo_dark": org.logo_dark,
        "created_at": org.created_at,
    }


async def _load_own(db: AsyncSession, principal: CurrentPrincipal) -> Organization:
    # Always keyed on the principal's organization; there is no id parameter to tamper with
    org = await db.get(Organization, principal.organization_id)
    if org is None:
        raise NotFound("Organization not found")
    return org


# --- Endpoints ---

@router.get("/current")
async def get_current_organization(
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db_session),
):
    """Any member can read their organization"""
    org = await _load_own(db, principal)
    return {"data": _org_out(org)}


@router.patch("/current")
async def update_current_organization(
    update_data: OrgUpdate,
    request: Request,
    principal: CurrentPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Administrators update name, settings and logos"""
    if not update_data.name or not update_data.name.strip():
        raise ValidationFailure("Invalid name")

    org = await _load_own(db, principal)
    org.name = update_data.name.strip()
    if update_data.settings is not None:
        org.settings = update_data.settings
    fields_set = update_data.model_fields_set
    if "logo_light" in fields_set:
        org.logo_light = update_data.logo_light
    if "logo_dark" in fields_set:
        org.logo_dark = update_data.logo_dark

    db.add(AuditLog(
        event_type=AuditEventType.ORG_UPDATED,
        organization_id=org.id,
        actor_sales_id=principal.id,
        resource_type="organization",
        resource_id=str(org.id),
        request_id=getattr(request.state, "request_id", None),
        details={"fields": sorted(fields_set)},
    ))
    await db.commit()
    await db.refresh(org)
    logger.info(f"Organization {org.id} updated by sales {principal.id}")
    return {"data": _org_out(org)}


@router.get("/defaults")
async def get_default_settings():
    """Settings a new organization starts with"""
    return {"data": default_settings()}
