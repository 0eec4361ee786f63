# onboarding.py — Identity onboarding state machine
"""
Decides, for every new auth identity, which organization its principal
(sales record) joins:

* metadata carries ``organization_id``  -> JOIN that organization
* metadata carries ``organization_name`` -> CREATE a fresh organization (admin)
* no principals exist yet              -> BOOTSTRAP "My Organization" (admin)
* otherwise                            -> reject self-registration

The decision is a pure function (``plan_onboarding``); ``create_identity``
applies it and writes identity, organization and principal in one
transaction so a failure leaves no orphaned identity behind.
"""
import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AuthorizationFailure, Conflict, NotFound, ValidationFailure
from models import (
    AuditEventType, AuditLog, AuthIdentity, Organization, Sale,
)

logger = logging.getLogger("crm-gateway.onboarding")

BOOTSTRAP_ORGANIZATION_NAME = "My Organization"

DEFAULT_ORGANIZATION_SETTINGS: Dict[str, Any] = {
    "title": "Atomic CRM",
    "companySectors": [
        "Communication Services",
        "Consumer Discretionary",
        "Consumer Staples",
        "Energy",
        "Financials",
        "Health Care",
        "Industrials",
        "Information Technology",
        "Materials",
        "Real Estate",
        "Utilities",
    ],
    "dealCategories": ["Other", "Copywriting", "Print project", "UI Design", "Website design"],
    "dealPipelineStatuses": ["won"],
    "dealStages": [
        {"value": "opportunity", "label": "Opportunity"},
        {"value": "proposal-sent", "label": "Proposal Sent"},
        {"value": "in-negociation", "label": "In Negotiation"},
        {"value": "won", "label": "Won"},
        {"value": "lost", "label": "Lost"},
        {"value": "delayed", "label": "Delayed"},
    ],
    "noteStatuses": [
        {"value": "cold", "label": "Cold", "color": "#7dbde8"},
        {"value": "warm", "label": "Warm", "color": "#e8cb7d"},
        {"value": "hot", "label": "Hot", "color": "#e88b7d"},
        {"value": "in-contract", "label": "In Contract", "color": "#a4e87d"},
    ],
    "taskTypes": [
        "None", "Email", "Demo", "Lunch", "Meeting", "Follow-up", "Thank you", "Ship", "Call",
    ],
    "contactGender": [
        {"value": "male", "label": "He/Him"},
        {"value": "female", "label": "She/Her"},
        {"value": "nonbinary", "label": "They/Them"},
    ],
}


def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_ORGANIZATION_SETTINGS)


class OnboardingState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPED = "bootstrapped"


class OnboardingAction(str, Enum):
    JOIN = "join"
    CREATE_ORGANIZATION = "create_organization"
    BOOTSTRAP = "bootstrap"


class SignupRejected(AuthorizationFailure):
    default_message = (
        "Cannot self-register: organization already exists. "
        "Please contact an administrator for an invitation."
    )


@dataclass(frozen=True)
class OnboardingPlan:
    action: OnboardingAction
    administrator: bool
    organization_id: Optional[int] = None
    organization_name: Optional[str] = None


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def plan_onboarding(metadata: Optional[Dict[str, Any]], has_principals: bool) -> OnboardingPlan:
    metadata = metadata or {}

    raw_org_id = metadata.get("organization_id")
    if raw_org_id is not None and raw_org_id != "":
        try:
            organization_id = int(raw_org_id)
        except (TypeError, ValueError):
            raise ValidationFailure("organization_id must be an integer")
        return OnboardingPlan(
            action=OnboardingAction.JOIN,
            administrator=_as_bool(metadata.get("administrator", False)),
            organization_id=organization_id,
        )

    organization_name = (metadata.get("organization_name") or "").strip()
    if organization_name:
        return OnboardingPlan(
            action=OnboardingAction.CREATE_ORGANIZATION,
            administrator=True,
            organization_name=organization_name,
        )

    if not has_principals:
        return OnboardingPlan(
            action=OnboardingAction.BOOTSTRAP,
            administrator=True,
            organization_name=BOOTSTRAP_ORGANIZATION_NAME,
        )

    raise SignupRejected()


async def get_onboarding_state(db: AsyncSession) -> OnboardingState:
    count = (await db.execute(select(func.count(Sale.id)))).scalar_one()
    return OnboardingState.BOOTSTRAPPED if count else OnboardingState.UNINITIALIZED


async def get_init_state(db: AsyncSession) -> int:
    state = await get_onboarding_state(db)
    return 1 if state == OnboardingState.BOOTSTRAPPED else 0


async def create_identity(
    db: AsyncSession,
    *,
    email: str,
    password_hash: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    event_type: AuditEventType = AuditEventType.USER_SIGNUP,
) -> Sale:
    """Create identity + principal (+ organization) atomically; returns the principal."""
    metadata = dict(metadata or {})

    existing = await db.execute(select(AuthIdentity.id).where(AuthIdentity.email == email))
    if existing.scalar_one_or_none() is not None:
        raise Conflict("A user with this email already exists")

    state = await get_onboarding_state(db)
    plan = plan_onboarding(metadata, state == OnboardingState.BOOTSTRAPPED)

    try:
        identity = AuthIdentity(
            email=email,
            password_hash=password_hash,
            raw_user_meta_data=metadata,
            banned=_as_bool(metadata.get("disabled", False)),
        )
        db.add(identity)
        await db.flush()

        if plan.action == OnboardingAction.JOIN:
            organization = await db.get(Organization, plan.organization_id)
            if organization is None or organization.disabled:
                raise NotFound("Organization not found")
        else:
            organization = Organization(
                name=plan.organization_name,
                slug=f"org-{identity.id}",
                settings=default_settings(),
            )
            db.add(organization)
            await db.flush()
            db.add(AuditLog(
                event_type=AuditEventType.ORG_CREATED,
                organization_id=organization.id,
                request_id=request_id,
                details={"name": organization.name, "action": plan.action.value},
            ))

        sale = Sale(
            user_id=identity.id,
            organization_id=organization.id,
            first_name=metadata.get("first_name"),
            last_name=metadata.get("last_name"),
            email=email,
            administrator=plan.administrator,
            is_service_account=_as_bool(metadata.get("is_service_account", False)),
            disabled=_as_bool(metadata.get("disabled", False)),
        )
        db.add(sale)
        await db.flush()

        db.add(AuditLog(
            event_type=event_type,
            organization_id=organization.id,
            actor_sales_id=sale.id,
            request_id=request_id,
            details={"action": plan.action.value, "administrator": plan.administrator},
        ))
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Onboarding failed for {email}: {e}")
        raise Conflict("A user with this email already exists")
    except Exception:
        await db.rollback()
        raise

    await db.refresh(sale)
    logger.info(f"Onboarded {email} ({plan.action.value}) into organization {organization.id}")
    return sale
