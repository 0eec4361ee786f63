# policy.py — Row-level policy engine and insert-time auto-population
"""
Tenant isolation for every table that uses the ``TenantScoped`` mixin.

Policies are independent allow-predicates combined with OR: an operation is
permitted when any policy allows it. Each policy answers both in Python
(``allows``, for rows about to be written) and in SQL (``clause``, appended to
SELECT/UPDATE/DELETE queries so the database only returns rows the scope may
see). A scope that no policy accepts yields ``false()``: zero rows, no error.

Auto-population runs as a ``before_flush`` hook. New rows get
``organization_id`` (and ``sales_id`` where the model has one) from the scope
bound to the session, and only then is the INSERT predicate checked.
"""
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import event, false, inspect, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from errors import NotFound, PolicyViolation
from models import Base, TenantScoped
from scope import SessionScope, bind_scope, current_scope

logger = logging.getLogger("crm-gateway.policy")


class Operation(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# ============================================================
# POLICIES
# ============================================================

class RowPolicy:
    name = "policy"

    def allows(self, scope: SessionScope, operation: Operation, organization_id: Optional[int]) -> bool:
        raise NotImplementedError

    def clause(self, model, scope: SessionScope, operation: Operation):
        raise NotImplementedError


class TenantIsolationPolicy(RowPolicy):
    name = "tenant_isolation"

    def allows(self, scope, operation, organization_id):
        return scope.organization_id is not None and organization_id == scope.organization_id

    def clause(self, model, scope, operation):
        if scope.organization_id is None:
            return false()
        return model.organization_id == scope.organization_id


class MasterKeyPolicy(RowPolicy):
    name = "master_key_full_access"

    def allows(self, scope, operation, organization_id):
        if not scope.is_master:
            return False
        if operation == Operation.INSERT:
            # Master may write into any organization but has to name one
            return organization_id is not None
        return True

    def clause(self, model, scope, operation):
        return true() if scope.is_master else false()


DEFAULT_POLICIES = (TenantIsolationPolicy(), MasterKeyPolicy())


class PolicyEngine:
    def __init__(self, policies: Optional[Iterable[RowPolicy]] = None):
        self.policies: List[RowPolicy] = list(policies if policies is not None else DEFAULT_POLICIES)

    def add_policy(self, policy: RowPolicy) -> None:
        self.policies.append(policy)

    def permits(self, scope: Optional[SessionScope], operation: Operation, organization_id: Optional[int]) -> bool:
        if scope is None:
            return False
        return any(p.allows(scope, operation, organization_id) for p in self.policies)

    def clause(self, model, scope: Optional[SessionScope], operation: Operation = Operation.SELECT):
        if scope is None or not self.policies:
            return false()
        return or_(*[p.clause(model, scope, operation) for p in self.policies])

    def check(self, scope: Optional[SessionScope], operation: Operation, row) -> None:
        if not self.permits(scope, operation, row.organization_id):
            raise PolicyViolation(row.__tablename__)


policy_engine = PolicyEngine()


def is_tenant_scoped(model) -> bool:
    return isinstance(model, type) and issubclass(model, TenantScoped)


# ============================================================
# AUTO-POPULATION (storage-layer hook)
# ============================================================

def populate_tenant_columns(row, scope: Optional[SessionScope]) -> None:
    if scope is None:
        return
    if row.organization_id is None:
        row.organization_id = scope.organization_id
    if hasattr(row, "sales_id") and row.sales_id is None and scope.sales_id is not None:
        row.sales_id = scope.sales_id


def _previous_organization_id(row) -> Optional[int]:
    history = inspect(row).attrs.organization_id.history
    if history.deleted:
        return history.deleted[0]
    return row.organization_id


@event.listens_for(Session, "before_flush")
def _enforce_row_policies(session, flush_context, instances):
    scope = current_scope(session)

    for row in session.new:
        if not isinstance(row, TenantScoped):
            continue
        populate_tenant_columns(row, scope)
        if scope is None:
            # Trusted internal path; the row must still name its tenant
            if row.organization_id is None:
                raise PolicyViolation(row.__tablename__)
            continue
        policy_engine.check(scope, Operation.INSERT, row)

    if scope is None:
        return

    for row in session.dirty:
        if not isinstance(row, TenantScoped):
            continue
        previous = _previous_organization_id(row)
        if not policy_engine.permits(scope, Operation.UPDATE, previous):
            raise PolicyViolation(row.__tablename__)
        policy_engine.check(scope, Operation.UPDATE, row)

    for row in session.deleted:
        if isinstance(row, TenantScoped):
            policy_engine.check(scope, Operation.DELETE, row)


# ============================================================
# SCOPE-CHECKED REPOSITORY
# ============================================================

def tenant_references(model) -> List[tuple]:
    """(column, target model) for every foreign key that points at tenant data"""
    targets = {mapper.local_table: mapper.class_ for mapper in Base.registry.mappers}
    references = []
    for column in model.__table__.columns:
        for foreign_key in column.foreign_keys:
            target = targets.get(foreign_key.column.table)
            if target is not None and is_tenant_scoped(target):
                references.append((column.key, target))
    return references


class TenantRepository:
    """CRUD over tenant-scoped models, always filtered through the policy engine"""

    def __init__(self, db: AsyncSession, scope: SessionScope, engine: PolicyEngine = None):
        self.db = db
        self.scope = scope
        self.engine = engine or policy_engine
        bind_scope(db, scope)

    def scoped(self, stmt, model, operation: Operation = Operation.SELECT):
        return stmt.where(self.engine.clause(model, self.scope, operation))

    async def select(self, model, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> list:
        stmt = self.scoped(select(model), model)
        for column, value in (filters or {}).items():
            stmt = stmt.where(getattr(model, column) == value)
        stmt = stmt.order_by(model.id)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def check_references(self, model, values: Dict[str, Any]) -> None:
        """Referenced tenant rows must be visible to the caller; hidden and missing look alike"""
        for column, target in tenant_references(model):
            value = values.get(column)
            if value is None:
                continue
            stmt = self.scoped(select(target.id).where(target.id == value), target)
            if (await self.db.execute(stmt)).first() is None:
                raise NotFound(f"{column} not found")

    async def insert(self, model, payload: Dict[str, Any]):
        await self.check_references(model, payload)
        row = model(**payload)
        self.db.add(row)
        await self.db.flush()
        return row

    async def _matching(self, model, row_id, operation: Operation) -> list:
        stmt = self.scoped(select(model).where(model.id == row_id), model, operation)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, model, row_id, changes: Dict[str, Any]) -> list:
        rows = await self._matching(model, row_id, Operation.UPDATE)
        if rows:
            await self.check_references(model, changes)
        for row in rows:
            for column, value in changes.items():
                setattr(row, column, value)
        if rows:
            await self.db.flush()
        return rows

    async def delete(self, model, row_id) -> list:
        rows = await self._matching(model, row_id, Operation.DELETE)
        for row in rows:
            await self.db.delete(row)
        if rows:
            await self.db.flush()
        return rows
