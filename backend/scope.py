# scope.py — Tenant scope resolution
"""
Turns a resolved credential or principal into the per-request SessionScope.

The scope is bound to the request's database session (``session.info``) so the
row-level policy hooks in policy.py see exactly one value for the lifetime of
that session's transaction. Nothing a client sends can reach it.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentPrincipal, get_current_principal
from credentials import ResolvedCredential
from database import get_db_session

SCOPE_INFO_KEY = "session_scope"


@dataclass(frozen=True)
class SessionScope:
    is_master: bool
    organization_id: Optional[int]
    sales_id: Optional[int] = None

    @classmethod
    def master(cls) -> "SessionScope":
        # No organization here means "bypass the tenant filter", not "no tenant"
        return cls(is_master=True, organization_id=None)

    @classmethod
    def for_organization(cls, organization_id: int, sales_id: Optional[int] = None) -> "SessionScope":
        return cls(is_master=False, organization_id=organization_id, sales_id=sales_id)


def bind_scope(session, scope: SessionScope) -> None:
    session.info[SCOPE_INFO_KEY] = scope


def current_scope(session) -> Optional[SessionScope]:
    return session.info.get(SCOPE_INFO_KEY)


def scope_for_credential(credential: ResolvedCredential) -> SessionScope:
    if credential.is_master:
        return SessionScope.master()
    return SessionScope.for_organization(credential.organization_id)


def scope_for_principal(principal: CurrentPrincipal) -> SessionScope:
    """Session tokens: the principal record decides the organization."""
    return SessionScope.for_organization(principal.organization_id, principal.id)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_principal_scope(
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db_session),
) -> SessionScope:
    scope = scope_for_principal(principal)
    bind_scope(db, scope)
    return scope
